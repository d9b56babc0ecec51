# territory/vector_store.py
"""
VectorStore adapter: material id -> embedding vector, fetch-or-compute.

The store wraps an Embedder (see embed.py) and a cache. The cache is an
in-memory dict by default, or a SQLiteEmbeddingCache for persistence.

Guarantees of get_embeddings():
 - every returned id maps to a finite, non-zero vector of the shared dimension
 - ids whose embedding could not be produced are omitted (and logged), never
   returned as None or as a zero vector

search() ranks materials against a free-text query with a FAISS
inner-product index over L2-normalized vectors (inner product == cosine).
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .embed import Embedder, default_embedder
from .models import Material

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class VectorStore:
    def __init__(self, embedder: Optional[Embedder] = None, cache=None):
        """
        Args:
            embedder: object with embed(text) (and optionally embed_texts(texts)).
                Resolved with default_embedder() on first use when omitted.
            cache: SQLiteEmbeddingCache or None for an in-memory cache.
        """
        self._embedder = embedder
        self._persistent = cache
        self._memory: Dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = default_embedder()
        return self._embedder

    # ------------------------
    # Cache access
    # ------------------------
    def _cached(self, ids: Sequence[str]) -> Dict[str, np.ndarray]:
        with self._lock:
            found = {i: self._memory[i] for i in ids if i in self._memory}
        missing = [i for i in ids if i not in found]
        if missing and self._persistent is not None:
            stored = self._persistent.get_many(missing)
            with self._lock:
                self._memory.update(stored)
            found.update(stored)
        return found

    def _remember(self, material_id: str, vector: np.ndarray) -> None:
        with self._lock:
            self._memory[material_id] = vector
        if self._persistent is not None:
            self._persistent.put(material_id, vector)

    def forget(self, material_id: str) -> None:
        """Drop a cached vector (call when a material's content changes)."""
        with self._lock:
            self._memory.pop(material_id, None)
        if self._persistent is not None:
            self._persistent.delete(material_id)

    # ------------------------
    # Embedding
    # ------------------------
    def _compute(self, materials: Sequence[Material]) -> Dict[str, np.ndarray]:
        """
        Embed materials, batching when the embedder supports it.

        Any failure of the injected embedder is logged and the affected
        materials are left out; it never aborts the caller.
        """
        if not materials:
            return {}
        embedder = self.embedder
        batch = getattr(embedder, "embed_texts", None)
        if batch is not None:
            try:
                vecs = batch([m.content for m in materials])
                return {m.id: np.asarray(v, dtype="float32") for m, v in zip(materials, vecs)}
            except Exception as e:
                logger.warning("Batch embedding failed, retrying per material: %s", e)

        out: Dict[str, np.ndarray] = {}
        for m in materials:
            try:
                out[m.id] = np.asarray(embedder.embed(m.content), dtype="float32")
            except Exception as e:
                logger.warning("Embedding failed for material %s; excluding it: %s", m.id, e)
        return out

    def get_embeddings(self, materials: Sequence[Material]) -> Dict[str, np.ndarray]:
        """
        Return id -> vector for the given materials, in input order.

        Cached vectors are reused; the rest are computed and cached. Materials
        whose vector cannot be produced, or comes back empty, zero, non-finite
        or of a different dimension than the others, are left out.
        """
        ids = [m.id for m in materials]
        found = self._cached(ids)
        todo = [m for m in materials if m.id not in found]
        if todo:
            for mid, vec in self._compute(todo).items():
                found[mid] = vec
                if _is_usable(vec):
                    self._remember(mid, vec)

        result: Dict[str, np.ndarray] = {}
        dim: Optional[int] = None
        for mid in ids:
            vec = found.get(mid)
            if vec is None:
                continue
            if not _is_usable(vec):
                logger.warning("Discarding unusable embedding for material %s", mid)
                continue
            if dim is None:
                dim = vec.shape[0]
            elif vec.shape[0] != dim:
                logger.warning(
                    "Discarding embedding for material %s: dim %d != %d", mid, vec.shape[0], dim
                )
                continue
            result[mid] = vec
        return result

    # ------------------------
    # Semantic search
    # ------------------------
    def search(
        self, query: str, materials: Sequence[Material], top_k: int = 10
    ) -> List[Tuple[str, float]]:
        """
        Rank materials by cosine similarity to a query text.

        Returns:
            List of (material_id, score) sorted by score descending, at most top_k.
        """
        if not query or not materials:
            return []
        vectors = self.get_embeddings(materials)
        if not vectors:
            return []
        doc_ids = list(vectors.keys())
        mat = np.vstack([vectors[i] for i in doc_ids]).astype("float32")
        qvec = np.asarray(self.embedder.embed(query), dtype="float32").reshape(1, -1)
        if qvec.shape[1] != mat.shape[1]:
            raise ValueError(f"Query vector dim {qvec.shape[1]} != index dim {mat.shape[1]}")

        import faiss

        # IndexFlatIP expects normalized vectors for cosine scores
        faiss.normalize_L2(mat)
        faiss.normalize_L2(qvec)
        index = faiss.IndexFlatIP(mat.shape[1])
        index.add(mat)
        scores, idxs = index.search(qvec, min(top_k, len(doc_ids)))

        results: List[Tuple[str, float]] = []
        for idx, sc in zip(idxs[0].tolist(), scores[0].tolist()):
            if idx == -1:
                continue
            results.append((doc_ids[idx], float(sc)))
        return results


def _is_usable(vec: np.ndarray) -> bool:
    return vec.ndim == 1 and vec.shape[0] > 0 and bool(np.all(np.isfinite(vec))) and bool(np.any(vec))
