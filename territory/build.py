# territory/build.py
"""
Territory build pipeline.

Pipeline steps:
  1. Fetch embeddings for all materials (materials without one are dropped)
  2. Cluster the embeddings (cosine K-means) and label each cluster
  3. Project all points to 2D (supervised UMAP, cluster index as target)
  4. Weight every point by recency and content length
  5. Cluster centroids on the canvas (mean of member positions)
  6. Sub-clusters per cluster for level of detail, with labels and centroids
  7. Density contours over the weighted points
  8. Voronoi tessellation over the cluster centroids
  9. Check structural invariants and assemble the TerritoryData snapshot

Every call is a full rebuild; nothing is updated incrementally.
TerritoryService wraps a builder and keeps only the newest finished build.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .clustering import cluster_embeddings, sub_cluster
from .config import TerritoryConfig
from .errors import InvariantViolation
from .geometry import build_tessellation, density_contours
from .label_service import default_label_service
from .labeling import EMPTY_LABEL, Labeler
from .layout import project_points
from .models import Cluster, Material, MaterialPoint, Position, SubCluster, TerritoryData
from .vector_store import VectorStore

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

MS_PER_DAY = 1000 * 60 * 60 * 24
RECENCY_WINDOW_DAYS = 30
MIN_RECENCY_WEIGHT = 0.5
MAX_DEPTH_WEIGHT = 1.5
SINGLE_LABEL_LENGTH = 30


# ------------------------
# Point weights
# ------------------------
def recency_weight(created_at_ms: float, now_ms: float) -> float:
    """1.0 at creation, linear down to 0.5 at 30 days, 0.5 afterwards."""
    days = (now_ms - created_at_ms) / MS_PER_DAY
    return max(MIN_RECENCY_WEIGHT, 1 - days / RECENCY_WINDOW_DAYS)


def depth_weight(content_length: int) -> float:
    """Longer content weighs more, capped at 1.5."""
    return min(MAX_DEPTH_WEIGHT, 0.5 + math.log10(content_length + 1) / 3)


def calculate_weight(material: Material, now_ms: float) -> float:
    return recency_weight(material.created_at, now_ms) * depth_weight(len(material.content))


def _mean_position(positions: Sequence[Position], default: Position) -> Position:
    if not positions:
        return default
    arr = np.asarray(positions, dtype="float64")
    return (float(arr[:, 0].mean()), float(arr[:, 1].mean()))


# ------------------------
# Invariants
# ------------------------
def validate_territory(
    points: Sequence[MaterialPoint], clusters: Sequence[Cluster], strict: bool = False
) -> Tuple[List[MaterialPoint], List[Cluster]]:
    """
    Check that clusters partition the points and sub-clusters nest in their parent.

    strict=True raises InvariantViolation on the first problem. Otherwise the
    problem is logged and the offending points / member ids are filtered out.
    """
    problems: List[str] = []
    cluster_ids = {c.id for c in clusters}
    point_ids = {p.id for p in points}

    kept_points = []
    for p in points:
        if p.cluster_id not in cluster_ids:
            problems.append(f"point {p.id} refers to unknown cluster {p.cluster_id}")
        elif not p.weight > 0:
            problems.append(f"point {p.id} has non-positive weight {p.weight}")
        else:
            kept_points.append(p)
    kept_ids = {p.id for p in kept_points}
    owner = {p.id: p.cluster_id for p in kept_points}

    kept_clusters = []
    seen: Dict[str, str] = {}
    for c in clusters:
        members = []
        for mid in c.member_ids:
            if mid not in point_ids:
                problems.append(f"cluster {c.id} lists unknown point {mid}")
            elif mid in seen:
                problems.append(f"point {mid} is in both {seen[mid]} and {c.id}")
            elif owner.get(mid) != c.id:
                problems.append(f"cluster {c.id} lists point {mid} owned by {owner.get(mid)}")
            else:
                seen[mid] = c.id
                members.append(mid)
        parent_members = set(members)

        subs = []
        for s in c.sub_clusters:
            stray = [mid for mid in s.member_ids if mid not in parent_members]
            if stray:
                problems.append(f"sub-cluster {s.id} has members outside {c.id}: {stray}")
                s = SubCluster(
                    id=s.id,
                    label=s.label,
                    member_ids=tuple(m for m in s.member_ids if m in parent_members),
                    centroid_position=s.centroid_position,
                    parent_id=s.parent_id,
                )
            if s.member_ids:
                subs.append(s)

        if members != list(c.member_ids) or len(subs) != len(c.sub_clusters):
            c = Cluster(
                id=c.id,
                label=c.label,
                member_ids=tuple(members),
                centroid_vector=c.centroid_vector,
                centroid_position=c.centroid_position,
                sub_clusters=tuple(subs),
            )
        kept_clusters.append(c)

    unowned = kept_ids - set(seen)
    for mid in sorted(unowned):
        problems.append(f"point {mid} belongs to no cluster")
    if unowned:
        kept_points = [p for p in kept_points if p.id not in unowned]

    if problems:
        if strict:
            raise InvariantViolation("; ".join(problems))
        for msg in problems:
            logger.error("Territory invariant violated: %s", msg)
    return kept_points, kept_clusters


# ------------------------
# Builder
# ------------------------
class TerritoryBuilder:
    """
    Orchestrates clustering, labeling, layout and geometry.

    Args:
        vector_store: VectorStore (wraps the injected embedder).
        labeler: Labeler (owns the label cache and optional label service).
            Defaults to one using the service picked from the environment.
        config: TerritoryConfig; defaults to TerritoryConfig().
    """

    def __init__(
        self,
        vector_store: Optional[VectorStore] = None,
        labeler: Optional[Labeler] = None,
        config: Optional[TerritoryConfig] = None,
    ):
        self.config = config or TerritoryConfig()
        self.vector_store = vector_store or VectorStore()
        self.labeler = labeler or Labeler(
            service=default_label_service(timeout=self.config.label_timeout),
            max_workers=self.config.label_workers,
        )

    def _sub_seed(self, parent_index: int):
        if self.config.seed is None:
            return None
        return np.random.default_rng([self.config.seed, parent_index])

    def _single(self, material: Material, cfg: TerritoryConfig, now_ms: float) -> TerritoryData:
        center = (cfg.width / 2.0, cfg.height / 2.0)
        cluster = Cluster(
            id="cluster-0",
            label=material.content[:SINGLE_LABEL_LENGTH] or EMPTY_LABEL,
            member_ids=(material.id,),
            centroid_vector=(),
            centroid_position=center,
        )
        point = MaterialPoint(
            id=material.id,
            position=center,
            cluster_id=cluster.id,
            weight=calculate_weight(material, now_ms),
        )
        return TerritoryData(points=(point,), clusters=(cluster,), bounds=(cfg.width, cfg.height))

    def build(
        self,
        materials: Sequence[Material],
        width: Optional[int] = None,
        height: Optional[int] = None,
        now_ms: Optional[float] = None,
    ) -> TerritoryData:
        """
        Build a TerritoryData snapshot from materials.

        Args:
            materials: notes to map; duplicate ids keep their first occurrence.
            width, height: canvas size (config values when omitted).
            now_ms: reference time for recency weights (wall clock by default).
        """
        cfg = self.config.with_bounds(width, height)
        now_ms = time.time() * 1000 if now_ms is None else now_ms
        bounds = (cfg.width, cfg.height)
        center = (cfg.width / 2.0, cfg.height / 2.0)

        unique: Dict[str, Material] = {}
        for m in materials:
            if m.id in unique:
                logger.warning("Duplicate material id %s; keeping the first", m.id)
                continue
            unique[m.id] = m
        materials = list(unique.values())

        if not materials:
            return TerritoryData(bounds=bounds)
        if len(materials) == 1:
            return self._single(materials[0], cfg, now_ms)

        # ---------------------------
        # 1) Embeddings
        # ---------------------------
        vectors = self.vector_store.get_embeddings(materials)
        dropped = len(materials) - len(vectors)
        if dropped:
            logger.warning("Excluding %d material(s) without an embedding", dropped)
        materials = [m for m in materials if m.id in vectors]
        if not materials:
            return TerritoryData(bounds=bounds)
        if len(materials) == 1:
            return self._single(materials[0], cfg, now_ms)
        by_id = {m.id: m for m in materials}
        items = [(m.id, vectors[m.id]) for m in materials]

        # ---------------------------
        # 2) Top-level clusters + labels
        # ---------------------------
        result = cluster_embeddings(items, max_iterations=cfg.max_iterations, random_state=cfg.seed)
        groups = sorted(result.members().items(), key=lambda kv: len(kv[1]), reverse=True)
        labels = self.labeler.label_many(
            [([by_id[mid].content for mid in ids], False) for _, ids in groups]
        )
        ordered_ids = [f"cluster-{idx}" for idx, _ in groups]
        cluster_of = {mid: f"cluster-{idx}" for idx, ids in groups for mid in ids}

        # ---------------------------
        # 3) 2D projection
        # ---------------------------
        positions = project_points(
            items,
            cluster_of,
            ordered_ids,
            cfg.width,
            cfg.height,
            padding=cfg.padding,
            seed=cfg.seed,
            min_dist=cfg.min_dist,
            spread=cfg.spread,
        )

        # ---------------------------
        # 4) Weighted points
        # ---------------------------
        points = [
            MaterialPoint(
                id=m.id,
                position=positions[m.id],
                cluster_id=cluster_of[m.id],
                weight=calculate_weight(m, now_ms),
            )
            for m in materials
            if m.id in positions
        ]
        point_pos = {p.id: p.position for p in points}

        # ---------------------------
        # 5) + 6) Centroids and sub-clusters
        # ---------------------------
        sub_groups = []
        centroids: List[Position] = []
        for parent_index, (idx, ids) in enumerate(groups):
            centroid = _mean_position([point_pos[i] for i in ids if i in point_pos], center)
            centroids.append(centroid)
            sub_groups.append(
                sub_cluster(
                    ids,
                    vectors,
                    max_iterations=cfg.sub_max_iterations,
                    random_state=self._sub_seed(parent_index),
                )
            )

        sub_labels = iter(
            self.labeler.label_many(
                [
                    ([by_id[mid].content for mid in g.member_ids], True)
                    for subs in sub_groups
                    for g in subs
                ]
            )
        )

        clusters: List[Cluster] = []
        for (idx, ids), label, centroid, subs in zip(groups, labels, centroids, sub_groups):
            cluster_id = f"cluster-{idx}"
            sub_clusters = tuple(
                SubCluster(
                    id=f"{cluster_id}-sub-{g.index}",
                    label=next(sub_labels),
                    member_ids=tuple(g.member_ids),
                    centroid_position=_mean_position(
                        [point_pos[i] for i in g.member_ids if i in point_pos], centroid
                    ),
                    parent_id=cluster_id,
                )
                for g in subs
            )
            clusters.append(
                Cluster(
                    id=cluster_id,
                    label=label,
                    member_ids=tuple(ids),
                    centroid_vector=tuple(float(v) for v in result.centroids[idx]),
                    centroid_position=centroid,
                    sub_clusters=sub_clusters,
                )
            )

        points, clusters = validate_territory(points, clusters, strict=cfg.strict)

        # ---------------------------
        # 7) Density contours
        # ---------------------------
        contours = density_contours(
            points,
            cfg.width,
            cfg.height,
            cell_size=cfg.cell_size,
            bandwidth=cfg.bandwidth,
            thresholds=cfg.thresholds,
        )

        # ---------------------------
        # 8) Voronoi tessellation
        # ---------------------------
        tessellation = build_tessellation([c.centroid_position for c in clusters], cfg.width, cfg.height)

        logger.info(
            "Built territory: %d points, %d clusters, %d contours",
            len(points),
            len(clusters),
            len(contours),
        )
        return TerritoryData(
            points=tuple(points),
            clusters=tuple(clusters),
            contours=tuple(contours),
            tessellation=tessellation,
            bounds=bounds,
        )


def build_territory(
    materials: Sequence[Material],
    width: Optional[int] = None,
    height: Optional[int] = None,
    vector_store: Optional[VectorStore] = None,
    labeler: Optional[Labeler] = None,
    config: Optional[TerritoryConfig] = None,
    now_ms: Optional[float] = None,
) -> TerritoryData:
    """One-shot convenience wrapper around TerritoryBuilder.build()."""
    builder = TerritoryBuilder(vector_store=vector_store, labeler=labeler, config=config)
    return builder.build(materials, width=width, height=height, now_ms=now_ms)


class TerritoryService:
    """
    Holds the newest territory for a changing material set.

    Each rebuild() takes a generation number. A build that finishes after a
    newer one has started is discarded (returns None), so the published
    snapshot always comes from the latest request.
    """

    def __init__(self, builder: Optional[TerritoryBuilder] = None):
        self.builder = builder or TerritoryBuilder()
        self._lock = threading.Lock()
        self._generation = 0
        self._current: Optional[TerritoryData] = None

    @property
    def current(self) -> Optional[TerritoryData]:
        with self._lock:
            return self._current

    def rebuild(self, materials: Sequence[Material], **kwargs) -> Optional[TerritoryData]:
        with self._lock:
            self._generation += 1
            generation = self._generation

        data = self.builder.build(materials, **kwargs)

        with self._lock:
            if generation != self._generation:
                logger.debug("Discarding stale territory build %d (latest %d)", generation, self._generation)
                return None
            self._current = data
        return data
