# territory/embed.py
"""
Embedding backends and vector helpers.

The territory pipeline only needs one capability from an embedding model:

    embed(text) -> 1D float vector (fixed length, e.g. 384)

Two backends are provided:
 - SentenceTransformerEmbedder: local model (default all-MiniLM-L6-v2, 384 dims)
 - OpenAIEmbedder: remote embeddings when OPENAI_API_KEY is configured

default_embedder() picks the first available one, in that order. Both return
float32 L2-normalized vectors. Anything with an embed(text) method can be
injected instead (tests use a deterministic fake).
"""

from __future__ import annotations

import importlib.util
import logging
import os
from typing import List, Optional, Protocol, Sequence

import numpy as np

from .errors import EmbeddingError

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

_ST_MODEL_NAME = os.environ.get("TERRITORY_EMBED_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
_OPENAI_MODEL_NAME = "text-embedding-3-small"


class Embedder(Protocol):
    def embed(self, text: str) -> np.ndarray:
        ...


def _l2_normalize(vecs: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vecs, axis=-1, keepdims=True)
    norms[norms == 0] = 1.0
    return vecs / norms


class SentenceTransformerEmbedder:
    """Local SentenceTransformers model, loaded on first use."""

    def __init__(self, model_name: str = _ST_MODEL_NAME):
        self.model_name = model_name
        self._model = None

    def _get_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer  # heavy import

            logger.info("Loading SentenceTransformer model: %s", self.model_name)
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed(self, text: str) -> np.ndarray:
        return self.embed_texts([text])[0]

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype="float32")
        try:
            vecs = self._get_model().encode(
                list(texts), convert_to_numpy=True, normalize_embeddings=True, show_progress_bar=False
            )
        except Exception as e:
            raise EmbeddingError(f"SentenceTransformer encode failed: {e}") from e
        return np.asarray(vecs, dtype="float32")


class OpenAIEmbedder:
    """
    OpenAI embeddings API. Requires OPENAI_API_KEY.
    text-embedding-3-small returns 1536 dims; vectors are re-normalized locally.
    """

    batch_size = 16

    def __init__(self, model: str = _OPENAI_MODEL_NAME, api_key: Optional[str] = None):
        self.model = model
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise EmbeddingError("OPENAI_API_KEY not set for OpenAI embeddings.")
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI

            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def embed(self, text: str) -> np.ndarray:
        return self.embed_texts([text])[0]

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype="float32")
        client = self._get_client()
        embs: List[List[float]] = []
        try:
            # batches keep requests under the input length limit
            for i in range(0, len(texts), self.batch_size):
                chunk = list(texts[i : i + self.batch_size])
                resp = client.embeddings.create(model=self.model, input=chunk)
                embs.extend(item.embedding for item in resp.data)
        except Exception as e:
            raise EmbeddingError(f"OpenAI embeddings request failed: {e}") from e
        return _l2_normalize(np.asarray(embs, dtype="float32"))


def default_embedder() -> Embedder:
    """
    Pick an embedding backend.

    Priority:
      1) SentenceTransformers (if installed)
      2) OpenAI embeddings if OPENAI_API_KEY is present
    """
    if importlib.util.find_spec("sentence_transformers") is not None:
        return SentenceTransformerEmbedder()
    if os.environ.get("OPENAI_API_KEY") and importlib.util.find_spec("openai") is not None:
        return OpenAIEmbedder()
    raise EmbeddingError(
        "No embedding backend available. Install sentence-transformers or set OPENAI_API_KEY."
    )


# ------------------------
# Vector helpers
# ------------------------
def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity of two 1D vectors. Scale-invariant, so un-normalized
    centroids compare correctly. A zero vector has similarity 0 to anything.

    Raises:
        ValueError: if the vectors differ in length.
    """
    a = np.asarray(a, dtype="float64")
    b = np.asarray(b, dtype="float64")
    if a.shape != b.shape:
        raise ValueError(f"Vectors must have same length, got {a.shape} and {b.shape}")
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return 0.0
    return float(np.dot(a, b) / denom)


def cosine_similarity_matrix(vectors: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """
    Pairwise cosine similarity, shape (n_vectors, n_centroids).
    Rows or centroids with zero norm score 0.
    """
    v = np.asarray(vectors, dtype="float64")
    c = np.asarray(centroids, dtype="float64")
    if v.shape[1] != c.shape[1]:
        raise ValueError(f"Dimension mismatch: vectors {v.shape[1]} vs centroids {c.shape[1]}")
    return _l2_normalize(v) @ _l2_normalize(c).T
