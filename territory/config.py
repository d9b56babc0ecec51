# territory/config.py
"""
Runtime configuration for territory builds.

All tunables live on TerritoryConfig. Defaults match the interactive canvas
(800x600 with a 50px margin); a handful of them can be overridden from the
environment with TerritoryConfig.from_env():

    TERRITORY_WIDTH    canvas width in px
    TERRITORY_HEIGHT   canvas height in px
    TERRITORY_SEED     seed for clustering and layout
    TERRITORY_STRICT   "1"/"true" to raise on invariant violations

Adapter credentials (OPENAI_API_KEY, OLLAMA_BASE_URL, ...) are read by the
adapters themselves, see embed.py and label_service.py.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Optional

DEFAULT_WIDTH = 800
DEFAULT_HEIGHT = 600
DEFAULT_SEED = 42

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class TerritoryConfig:
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    padding: float = 50.0
    seed: Optional[int] = DEFAULT_SEED

    # clustering
    max_iterations: int = 20
    sub_max_iterations: int = 10

    # layout (UMAP)
    min_dist: float = 0.25
    spread: float = 1.0

    # density contours
    cell_size: float = 8.0
    bandwidth: float = 30.0
    thresholds: int = 10

    # labeling
    label_timeout: float = 10.0
    label_workers: int = 4

    # raise InvariantViolation instead of logging + filtering
    strict: bool = False

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Canvas bounds must be positive, got {self.width}x{self.height}")

    def with_bounds(self, width: Optional[int] = None, height: Optional[int] = None) -> "TerritoryConfig":
        """Return a copy with the canvas size replaced (None keeps the current value)."""
        return replace(
            self,
            width=self.width if width is None else width,
            height=self.height if height is None else height,
        )

    @classmethod
    def from_env(cls, **overrides) -> "TerritoryConfig":
        """Build a config from TERRITORY_* environment variables plus explicit overrides."""
        values = {}
        if os.environ.get("TERRITORY_WIDTH"):
            values["width"] = int(os.environ["TERRITORY_WIDTH"])
        if os.environ.get("TERRITORY_HEIGHT"):
            values["height"] = int(os.environ["TERRITORY_HEIGHT"])
        if os.environ.get("TERRITORY_SEED"):
            values["seed"] = int(os.environ["TERRITORY_SEED"])
        if os.environ.get("TERRITORY_STRICT"):
            values["strict"] = os.environ["TERRITORY_STRICT"].strip().lower() in _TRUTHY
        values.update(overrides)
        return cls(**values)
