"""
Shared fixtures: a deterministic fake embedder, fake label services and a
small three-topic corpus of notes.
"""
import zlib
from typing import List

import numpy as np
import pytest

from territory.errors import EmbeddingError
from territory.label_service import LabelOk, LabelUnavailable
from territory.models import Material

NOW_MS = 1_760_000_000_000.0
DAY_MS = 24 * 60 * 60 * 1000

# keyword -> embedding axis
TOPICS = {"garden": 0, "coffee": 1, "marathon": 2}

CORPUS = [
    "Planted tomatoes in the garden, the soil is finally warm",
    "Garden beds need compost before the spring planting",
    "Pruned the roses in the back garden this morning",
    "Garden tour with the neighbours, lots of basil everywhere",
    "Tried a new coffee roast from Ethiopia, very fruity",
    "Coffee grinder settings for the pour over method",
    "Morning coffee ritual at the cafe downtown",
    "Cold brew coffee experiment, steeped eighteen hours",
    "Marathon training week six, long run of thirty kilometers",
    "Marathon pacing strategy for the hills near the river",
    "Recovery day after the marathon tempo session",
    "Signed up for the autumn marathon in Berlin",
]


class FakeEmbedder:
    """Unit vectors pointing at the axis of each topic keyword, plus seeded noise."""

    dim = 16

    def __init__(self):
        self.calls = 0

    def embed(self, text: str) -> np.ndarray:
        self.calls += 1
        rng = np.random.default_rng(zlib.crc32(text.encode("utf-8")))
        vec = rng.normal(0.0, 0.05, self.dim)
        for word, axis in TOPICS.items():
            if word in text.lower():
                vec[axis] += 1.0
        return (vec / np.linalg.norm(vec)).astype("float32")


class FailingEmbedder(FakeEmbedder):
    """Fails for any text containing FAIL."""

    def embed(self, text: str) -> np.ndarray:
        if "FAIL" in text:
            raise EmbeddingError("model refused input")
        return super().embed(text)


class CountingLabelService:
    def __init__(self, answer: str = "Home Gardening"):
        self.answer = answer
        self.calls = 0
        self.prompts: List[str] = []

    def generate_label(self, prompt: str):
        self.calls += 1
        self.prompts.append(prompt)
        return LabelOk(self.answer)


class UnavailableLabelService:
    def __init__(self):
        self.calls = 0

    def generate_label(self, prompt: str):
        self.calls += 1
        return LabelUnavailable("offline")


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def materials():
    return [
        Material(id=f"m{i:02d}", content=text, created_at=NOW_MS - i * DAY_MS)
        for i, text in enumerate(CORPUS)
    ]
