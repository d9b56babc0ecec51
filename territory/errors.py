# territory/errors.py
"""
Exception types raised by the territory pipeline.

Degenerate inputs (no materials, a single material, too few points for a
tessellation) are not errors: they produce well-defined empty or collapsed
results. Exceptions are reserved for missing backends and for logic bugs.
"""


class TerritoryError(Exception):
    """Base class for all territory errors."""


class EmbeddingError(TerritoryError):
    """No embedding backend is available, or a backend failed for a text."""


class InvariantViolation(TerritoryError):
    """
    A built territory broke one of its structural guarantees, e.g. a point
    refers to a cluster id that does not exist, or a sub-cluster claims a
    member outside its parent.
    """
