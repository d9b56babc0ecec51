import numpy as np
import pytest

from territory.clustering import (
    assign_to_clusters,
    cluster_embeddings,
    determine_k,
    init_centroids,
    recompute_centroids,
    sub_cluster,
)

from conftest import TOPICS, FakeEmbedder


@pytest.mark.parametrize(
    "n,k",
    [(0, 1), (1, 1), (3, 1), (4, 2), (6, 2), (7, 3), (12, 3), (13, 4), (20, 4),
     (21, 5), (35, 5), (36, 6), (48, 6), (49, 7), (50, 7), (1000, 7)],
)
def test_determine_k_table(n, k):
    assert determine_k(n) == k


def _topic_items(per_topic=4):
    emb = FakeEmbedder()
    items = []
    for word in TOPICS:
        for j in range(per_topic):
            items.append((f"{word}-{j}", emb.embed(f"{word} note number {j}")))
    return items


def test_empty_and_single_inputs():
    assert cluster_embeddings([]).assignment == {}

    vec = np.ones(8, dtype="float32")
    result = cluster_embeddings([("only", vec)])
    assert result.assignment == {"only": 0}
    assert len(result.centroids) == 1
    assert result.centroids[0].size == 0


def test_assignment_is_a_partition():
    items = _topic_items()
    result = cluster_embeddings(items, random_state=7)
    assert set(result.assignment) == {item_id for item_id, _ in items}
    members = result.members()
    flat = [mid for ids in members.values() for mid in ids]
    assert sorted(flat) == sorted(result.assignment)
    assert len(flat) == len(set(flat))
    assert 1 <= result.iterations <= 20
    # 12 items -> k=3
    assert len(result.centroids) == 3


def test_separated_topics_end_up_in_separate_clusters():
    items = _topic_items()
    result = cluster_embeddings(items, force_k=3, random_state=3)
    for word in TOPICS:
        labels = {result.assignment[f"{word}-{j}"] for j in range(4)}
        assert len(labels) == 1
    assert len(set(result.assignment.values())) == 3


def test_centroids_are_plain_means():
    items = _topic_items()
    result = cluster_embeddings(items, force_k=3, random_state=3)
    vectors = dict(items)
    for idx, ids in result.members().items():
        expected = np.mean([vectors[i] for i in ids], axis=0)
        assert np.allclose(result.centroids[idx], expected, atol=1e-6)
        # the mean of distinct unit vectors is shorter than 1; it is kept that way
        assert np.linalg.norm(result.centroids[idx]) < 1.0


def test_same_seed_same_result():
    items = _topic_items()
    a = cluster_embeddings(items, random_state=11)
    b = cluster_embeddings(items, random_state=11)
    assert a.assignment == b.assignment
    for ca, cb in zip(a.centroids, b.centroids):
        assert np.array_equal(ca, cb)


def test_force_k_is_clamped_to_item_count():
    items = _topic_items(per_topic=1)
    result = cluster_embeddings(items, force_k=10, random_state=0)
    assert len(result.centroids) == 3


def test_assign_prefers_lower_index_on_ties():
    vectors = np.array([[1.0, 0.0]])
    centroids = np.array([[2.0, 0.0], [1.0, 0.0]])  # same direction, different length
    assert assign_to_clusters(vectors, centroids).tolist() == [0]


def test_empty_cluster_keeps_previous_centroid():
    vectors = np.array([[1.0, 0.0], [0.9, 0.1]])
    labels = np.array([0, 0])
    previous = np.array([[0.5, 0.5], [0.0, 1.0]])
    updated = recompute_centroids(vectors, labels, previous)
    assert np.allclose(updated[0], [0.95, 0.05])
    assert np.array_equal(updated[1], previous[1])


def test_seeding_handles_identical_vectors():
    vectors = np.tile(np.array([[0.6, 0.8]]), (5, 1))
    centroids = init_centroids(vectors, 3, np.random.default_rng(0))
    assert centroids.shape == (3, 2)


def test_sub_cluster_needs_four_members():
    items = dict(_topic_items())
    assert sub_cluster(["garden-0", "garden-1", "garden-2"], items) == []
    # four members listed but only three have vectors
    partial = {k: v for k, v in items.items() if k != "garden-3"}
    assert sub_cluster(["garden-0", "garden-1", "garden-2", "garden-3"], partial) == []


def test_sub_cluster_stays_inside_parent_and_sorts_by_size():
    items = dict(_topic_items(per_topic=4))
    parent = ["garden-0", "garden-1", "garden-2", "garden-3", "coffee-0", "coffee-1", "coffee-2"]
    groups = sub_cluster(parent, items, random_state=5)

    # 7 members -> floor(7/3) = 2 sub-clusters at most
    assert 1 <= len(groups) <= 2
    flat = [mid for g in groups for mid in g.member_ids]
    assert sorted(flat) == sorted(parent)
    sizes = [len(g.member_ids) for g in groups]
    assert sizes == sorted(sizes, reverse=True)


def test_sub_cluster_count_is_capped_at_three():
    items = dict(_topic_items(per_topic=6))
    parent = list(items)  # 18 members -> min(3, 6) = 3
    groups = sub_cluster(parent, items, random_state=1)
    assert len(groups) <= 3
    assert {g.index for g in groups} <= {0, 1, 2}
