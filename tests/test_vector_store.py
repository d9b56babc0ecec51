import numpy as np
import pytest

from territory.embed import cosine_similarity, cosine_similarity_matrix
from territory.errors import EmbeddingError
from territory.models import Material
from territory.storage import SQLiteEmbeddingCache
from territory.vector_store import VectorStore

from conftest import NOW_MS, FailingEmbedder, FakeEmbedder


def _mat(mid, content):
    return Material(id=mid, content=content, created_at=NOW_MS)


class ZeroEmbedder(FakeEmbedder):
    def embed(self, text):
        if "zero" in text:
            return np.zeros(self.dim, dtype="float32")
        return super().embed(text)


class BatchEmbedder(FakeEmbedder):
    def __init__(self):
        super().__init__()
        self.batches = 0

    def embed_texts(self, texts):
        self.batches += 1
        if any("FAIL" in t for t in texts):
            raise EmbeddingError("batch rejected")
        return np.vstack([self.embed(t) for t in texts])


def test_embeddings_are_cached(materials):
    emb = FakeEmbedder()
    store = VectorStore(embedder=emb)
    first = store.get_embeddings(materials)
    assert list(first) == [m.id for m in materials]
    assert emb.calls == len(materials)

    second = store.get_embeddings(materials)
    assert emb.calls == len(materials)
    for mid in first:
        assert np.array_equal(first[mid], second[mid])


def test_forget_recomputes():
    emb = FakeEmbedder()
    store = VectorStore(embedder=emb)
    m = _mat("a", "garden notes")
    store.get_embeddings([m])
    store.forget("a")
    store.get_embeddings([m])
    assert emb.calls == 2


def test_failed_embeddings_are_omitted():
    store = VectorStore(embedder=FailingEmbedder())
    mats = [_mat("ok", "garden"), _mat("bad", "FAIL here"), _mat("ok2", "coffee")]
    vectors = store.get_embeddings(mats)
    assert list(vectors) == ["ok", "ok2"]


def test_zero_vectors_are_discarded():
    store = VectorStore(embedder=ZeroEmbedder())
    vectors = store.get_embeddings([_mat("z", "zero content"), _mat("g", "garden")])
    assert list(vectors) == ["g"]


def test_batch_failure_falls_back_to_single_calls():
    emb = BatchEmbedder()
    store = VectorStore(embedder=emb)
    vectors = store.get_embeddings([_mat("a", "garden"), _mat("b", "FAIL"), _mat("c", "coffee")])
    assert emb.batches == 1
    assert set(vectors) == {"a", "c"}


def test_sqlite_cache_survives_a_new_store(tmp_path):
    path = tmp_path / "emb.db"
    emb = FakeEmbedder()
    mats = [_mat("a", "garden"), _mat("b", "coffee")]
    VectorStore(embedder=emb, cache=SQLiteEmbeddingCache(path)).get_embeddings(mats)
    assert emb.calls == 2

    cache = SQLiteEmbeddingCache(path)
    assert len(cache) == 2
    again = VectorStore(embedder=emb, cache=cache).get_embeddings(mats)
    assert emb.calls == 2
    assert np.allclose(again["a"], FakeEmbedder().embed("garden"))

    cache.delete("a")
    assert cache.get("a") is None
    assert len(cache) == 1


def test_search_ranks_by_similarity(materials):
    store = VectorStore(embedder=FakeEmbedder())
    hits = store.search("coffee", materials, top_k=4)
    assert len(hits) == 4
    assert all("coffee" in materials[int(mid[1:])].content.lower() for mid, _ in hits)
    scores = [s for _, s in hits]
    assert scores == sorted(scores, reverse=True)

    assert store.search("", materials) == []
    assert store.search("coffee", []) == []


def test_cosine_helpers():
    assert cosine_similarity([1, 0], [2, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 3]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 1]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1, 0], [1, 0, 0])

    sims = cosine_similarity_matrix(np.array([[1.0, 0.0], [0.0, 0.0]]), np.array([[3.0, 0.0], [1.0, 1.0]]))
    assert sims.shape == (2, 2)
    assert sims[0, 0] == pytest.approx(1.0)
    assert sims[0, 1] == pytest.approx(np.sqrt(0.5))
    assert np.allclose(sims[1], 0.0)


class CrashingEmbedder(FakeEmbedder):
    """Raises a plain runtime error, not EmbeddingError, for texts containing FAIL."""

    def embed(self, text):
        if "FAIL" in text:
            raise RuntimeError("model crashed")
        return super().embed(text)


class CrashingBatchEmbedder(FakeEmbedder):
    def embed_texts(self, texts):
        raise ConnectionError("embedding server went away")


def test_any_embedder_exception_only_drops_that_material():
    store = VectorStore(embedder=CrashingEmbedder())
    vectors = store.get_embeddings([_mat("a", "garden"), _mat("b", "FAIL now"), _mat("c", "coffee")])
    assert list(vectors) == ["a", "c"]


def test_batch_exception_falls_back_to_single_calls():
    emb = CrashingBatchEmbedder()
    vectors = VectorStore(embedder=emb).get_embeddings([_mat("a", "garden"), _mat("b", "coffee")])
    assert list(vectors) == ["a", "b"]
    assert emb.calls == 2
