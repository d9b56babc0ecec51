# territory/layout.py
"""
2D layout of material embeddings.

Embeddings are reduced to two dimensions with supervised UMAP: the
top-level cluster index of every point is passed as the target, which pulls
same-cluster points together on the canvas. The reduction is seeded
(random_state), so the same vectors + labels + seed give the same layout.

The raw UMAP coordinates are then mapped linearly onto the canvas, per axis,
into [padding, size - padding], after widening the observed range by 10% on
each side.

Small inputs:
 - 0 points -> {}
 - 1 point  -> canvas center
 - 2 points -> PCA instead of UMAP (a 2-point neighbor graph is empty)
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

Position = Tuple[float, float]

DEFAULT_PADDING = 50.0
RANGE_MARGIN = 0.1

# UMAP parameters
UMAP_MAX_NEIGHBORS = 15
UMAP_MAX_EPOCHS = 200
UMAP_EPOCHS_PER_POINT = 10
UMAP_MIN_DIST = 0.25
UMAP_SPREAD = 1.0
UMAP_METRIC = "cosine"
UMAP_SPECTRAL_MIN_POINTS = 10
UMAP_MIN_POINTS = 3


def n_neighbors_for(n_points: int) -> int:
    return min(UMAP_MAX_NEIGHBORS, max(2, n_points // 2))


def n_epochs_for(n_points: int) -> int:
    return min(UMAP_MAX_EPOCHS, n_points * UMAP_EPOCHS_PER_POINT)


def encode_cluster_labels(
    ids: Sequence[str], cluster_of: Mapping[str, str], ordered_cluster_ids: Sequence[str]
) -> np.ndarray:
    """Cluster id -> ordinal class label. Points without a known cluster get class 0."""
    index = {cid: i for i, cid in enumerate(ordered_cluster_ids)}
    return np.array([index.get(cluster_of.get(i, ""), 0) for i in ids], dtype=int)


def _reduce_umap(vectors: np.ndarray, labels: np.ndarray, seed: Optional[int], min_dist: float, spread: float) -> np.ndarray:
    import umap  # heavy import (numba)

    n = vectors.shape[0]
    reducer = umap.UMAP(
        n_components=2,
        n_neighbors=n_neighbors_for(n),
        min_dist=min_dist,
        spread=spread,
        n_epochs=n_epochs_for(n),
        metric=UMAP_METRIC,
        init="spectral" if n >= UMAP_SPECTRAL_MIN_POINTS else "random",
        random_state=seed,
        n_jobs=1,
    )
    return reducer.fit_transform(vectors, y=labels)


def _reduce_pca(vectors: np.ndarray) -> np.ndarray:
    from sklearn.decomposition import PCA

    n_components = min(2, vectors.shape[0], vectors.shape[1])
    coords = PCA(n_components=n_components, svd_solver="full").fit_transform(vectors)
    if coords.shape[1] < 2:
        coords = np.hstack([coords, np.zeros((coords.shape[0], 2 - coords.shape[1]))])
    return coords


def scale_to_canvas(coords: np.ndarray, width: float, height: float, padding: float = DEFAULT_PADDING) -> np.ndarray:
    """
    Map raw 2D coordinates onto the canvas, each axis independently.
    A zero-width axis (all points equal) is treated as a unit range.
    """
    out = np.empty_like(coords, dtype="float64")
    for axis, size in ((0, width), (1, height)):
        lo, hi = float(coords[:, axis].min()), float(coords[:, axis].max())
        rng = (hi - lo) or 1.0
        d0, d1 = lo - rng * RANGE_MARGIN, hi + rng * RANGE_MARGIN
        r0, r1 = padding, size - padding
        out[:, axis] = r0 + (coords[:, axis] - d0) * (r1 - r0) / (d1 - d0)
    return out


def project_points(
    points: Sequence[Tuple[str, np.ndarray]],
    cluster_of: Mapping[str, str],
    ordered_cluster_ids: Sequence[str],
    width: float,
    height: float,
    padding: float = DEFAULT_PADDING,
    seed: Optional[int] = 42,
    min_dist: float = UMAP_MIN_DIST,
    spread: float = UMAP_SPREAD,
) -> Dict[str, Position]:
    """
    Project (id, vector) pairs to canvas coordinates.

    Args:
        points: (id, embedding) pairs.
        cluster_of: id -> cluster id, used as the supervised UMAP target.
        ordered_cluster_ids: fixes the cluster id -> class label encoding.
        width, height: canvas size.
        padding: margin kept free on every side.
        seed: UMAP random_state; None means non-deterministic.

    Returns:
        id -> (x, y)
    """
    if not points:
        return {}
    ids = [pid for pid, _ in points]
    if len(points) == 1:
        return {ids[0]: (width / 2.0, height / 2.0)}

    vectors = np.vstack([np.asarray(v, dtype="float32") for _, v in points])
    n = len(ids)

    if n < UMAP_MIN_POINTS:
        # a 2-point neighbor graph is empty; PCA ignores the cluster labels
        coords = _reduce_pca(vectors)
    else:
        labels = encode_cluster_labels(ids, cluster_of, ordered_cluster_ids)
        logger.debug(
            "UMAP: n=%d n_neighbors=%d n_epochs=%d seed=%s", n, n_neighbors_for(n), n_epochs_for(n), seed
        )
        coords = _reduce_umap(vectors, labels, seed, min_dist, spread)

    scaled = scale_to_canvas(np.asarray(coords, dtype="float64"), width, height, padding)
    return {pid: (float(x), float(y)) for pid, (x, y) in zip(ids, scaled)}
