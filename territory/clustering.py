# territory/clustering.py
"""
K-means clustering of material embeddings in cosine-similarity space.

Every nearest-centroid decision below uses cosine similarity, never
Euclidean distance on the raw embeddings (so not sklearn.KMeans).

Behaviour worth knowing:
 - k is chosen from the corpus size (determine_k) unless forced.
 - Seeding is K-means++-style, but the next seed is drawn with probability
   proportional to its cosine distance (1 - sim), not the squared distance.
 - Centroids are plain component-wise means and are NOT re-normalized.
   Cosine similarity is scale-invariant, so comparisons stay valid.
 - A cluster that loses all its members keeps its previous centroid.

Functions:
    determine_k: Number of clusters for n items.
    cluster_embeddings: Top-level K-means over (id, vector) pairs.
    sub_cluster: Bounded K-means inside one parent cluster (level of detail).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .embed import cosine_similarity_matrix

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

RandomState = Union[None, int, np.random.Generator]

DEFAULT_MAX_ITERATIONS = 20
SUB_MAX_ITERATIONS = 10
MIN_SUB_CLUSTER_MEMBERS = 4


@dataclass
class ClusterResult:
    """
    assignment: item id -> cluster index (0..k-1)
    centroids: one vector per cluster index; empty vector for a 1-item input
    """

    assignment: Dict[str, int] = field(default_factory=dict)
    centroids: List[np.ndarray] = field(default_factory=list)
    iterations: int = 0

    def members(self) -> Dict[int, List[str]]:
        """Cluster index -> member ids (input order), only non-empty clusters, ascending index."""
        groups: Dict[int, List[str]] = {}
        for item_id, idx in self.assignment.items():
            groups.setdefault(idx, []).append(item_id)
        return {idx: groups[idx] for idx in sorted(groups)}


@dataclass
class SubClusterGroup:
    index: int
    member_ids: List[str]
    centroid: np.ndarray


def determine_k(n: int) -> int:
    """
    Number of clusters for n items. Small corpora get few clusters so each
    label stays meaningful; large ones are capped at 7.
    """
    if n <= 3:
        return 1
    if n <= 6:
        return 2
    if n <= 12:
        return 3
    if n <= 20:
        return 4
    if n <= 35:
        return 5
    return min(7, int(math.floor(math.sqrt(n))))


def _as_generator(random_state: RandomState) -> np.random.Generator:
    if isinstance(random_state, np.random.Generator):
        return random_state
    return np.random.default_rng(random_state)


def init_centroids(vectors: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """
    Distance-weighted seeding.

    The first centroid is a uniform pick. Each further centroid is drawn with
    probability proportional to the item's cosine distance to its nearest
    chosen centroid. If the draw selects nothing (rounding), pick uniformly.
    """
    n = vectors.shape[0]
    centroids = [vectors[rng.integers(n)].copy()]

    while len(centroids) < k:
        sims = cosine_similarity_matrix(vectors, np.vstack(centroids))
        dists = np.clip(np.min(1.0 - sims, axis=1), 0.0, None)
        total = float(dists.sum())

        target = rng.random() * total
        # first i with cumulative distance >= target
        pick = int(np.searchsorted(np.cumsum(dists), target, side="left"))
        if pick >= n:
            pick = int(rng.integers(n))
        centroids.append(vectors[pick].copy())

    return np.vstack(centroids)


def assign_to_clusters(vectors: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """Index of the most cosine-similar centroid per vector; ties go to the lower index."""
    sims = cosine_similarity_matrix(vectors, centroids)
    return np.argmax(sims, axis=1)


def recompute_centroids(vectors: np.ndarray, labels: np.ndarray, previous: np.ndarray) -> np.ndarray:
    """Mean of member vectors per cluster (not re-normalized); empty clusters keep `previous`."""
    centroids = previous.copy()
    for idx in range(previous.shape[0]):
        mask = labels == idx
        if np.any(mask):
            centroids[idx] = vectors[mask].mean(axis=0)
    return centroids


def _kmeans(
    vectors: np.ndarray, k: int, max_iterations: int, rng: np.random.Generator
) -> Tuple[np.ndarray, np.ndarray, int]:
    centroids = init_centroids(vectors, k, rng)
    labels: Optional[np.ndarray] = None
    iterations = 0

    for iterations in range(1, max_iterations + 1):
        new_labels = assign_to_clusters(vectors, centroids)
        changed = labels is None or bool(np.any(new_labels != labels))
        labels = new_labels
        if not changed:
            break
        centroids = recompute_centroids(vectors, labels, centroids)

    if labels is None:
        labels = assign_to_clusters(vectors, centroids)
    return labels, centroids, iterations


def _stack(items: Sequence[Tuple[str, np.ndarray]]) -> Tuple[List[str], np.ndarray]:
    ids = [item_id for item_id, _ in items]
    vectors = np.vstack([np.asarray(v, dtype="float64") for _, v in items])
    return ids, vectors


def cluster_embeddings(
    items: Sequence[Tuple[str, np.ndarray]],
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    force_k: Optional[int] = None,
    random_state: RandomState = None,
) -> ClusterResult:
    """
    Partition (id, vector) pairs into k clusters.

    Args:
        items: (id, embedding) pairs; all embeddings share one dimension.
        max_iterations: upper bound on assignment/update rounds.
        force_k: use this k instead of determine_k(n) (clamped to n).
        random_state: seed or numpy Generator for the seeding draws.

    Returns:
        ClusterResult. 0 items -> empty result; 1 item -> single cluster
        with an empty centroid vector.
    """
    n = len(items)
    if n == 0:
        return ClusterResult()
    if n == 1:
        return ClusterResult(assignment={items[0][0]: 0}, centroids=[np.empty(0)])

    k = force_k if force_k else determine_k(n)
    k = max(1, min(k, n))

    ids, vectors = _stack(items)
    labels, centroids, iterations = _kmeans(vectors, k, max_iterations, _as_generator(random_state))
    logger.debug("K-means: n=%d k=%d converged after %d iteration(s)", n, k, iterations)

    return ClusterResult(
        assignment={item_id: int(lab) for item_id, lab in zip(ids, labels)},
        centroids=[c for c in centroids],
        iterations=iterations,
    )


def sub_cluster(
    member_ids: Sequence[str],
    vectors: Mapping[str, np.ndarray],
    max_iterations: int = SUB_MAX_ITERATIONS,
    random_state: RandomState = None,
) -> List[SubClusterGroup]:
    """
    Split one cluster's members into 2-3 groups for level-of-detail display.

    Only the parent's own members are considered, so sub-clusters never
    cross a top-level boundary. Needs >= 4 members and >= 4 of them with a
    vector, otherwise returns []. Groups are sorted by size, largest first.
    """
    if len(member_ids) < MIN_SUB_CLUSTER_MEMBERS:
        return []
    items = [(mid, vectors[mid]) for mid in member_ids if mid in vectors]
    if len(items) < MIN_SUB_CLUSTER_MEMBERS:
        return []

    sub_k = min(3, max(2, len(member_ids) // 3))
    ids, mat = _stack(items)
    labels, centroids, _ = _kmeans(mat, sub_k, max_iterations, _as_generator(random_state))

    groups: Dict[int, List[str]] = {}
    for item_id, lab in zip(ids, labels):
        groups.setdefault(int(lab), []).append(item_id)

    result = [
        SubClusterGroup(index=idx, member_ids=groups[idx], centroid=centroids[idx])
        for idx in sorted(groups)
    ]
    result.sort(key=lambda g: len(g.member_ids), reverse=True)
    return result
