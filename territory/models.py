# territory/models.py
"""
Data model for semantic territory maps.

A build turns a list of Material objects into one immutable TerritoryData
snapshot:

    TerritoryData
      points      -> MaterialPoint (canvas position, owning cluster, weight)
      clusters    -> Cluster (largest first) -> SubCluster (largest first)
      contours    -> DensityContour (iso-bands of the weighted point density)
      tessellation-> Voronoi cells over cluster centroids (see geometry.py)
      bounds      -> (width, height) of the canvas

Snapshots are never mutated; a changed material set means a new build.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:  # pragma: no cover
    from .geometry import Tessellation

Position = Tuple[float, float]
Ring = Tuple[Position, ...]
Polygon = Tuple[Ring, ...]


@dataclass(frozen=True)
class Material:
    """A note as supplied by the material store. created_at is epoch milliseconds."""

    id: str
    content: str
    created_at: float


@dataclass(frozen=True)
class MaterialPoint:
    id: str
    position: Position
    cluster_id: str
    weight: float

    @property
    def x(self) -> float:
        return self.position[0]

    @property
    def y(self) -> float:
        return self.position[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "x": float(self.x),
            "y": float(self.y),
            "cluster_id": self.cluster_id,
            "weight": float(self.weight),
        }


@dataclass(frozen=True)
class SubCluster:
    """
    Finer grouping inside one Cluster, used for level-of-detail display.

    parent_id is a lookup reference only; the parent Cluster owns the
    sub-cluster through Cluster.sub_clusters.
    """

    id: str
    label: str
    member_ids: Tuple[str, ...]
    centroid_position: Position
    parent_id: str

    @property
    def member_count(self) -> int:
        return len(self.member_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "member_ids": list(self.member_ids),
            "centroid": [float(c) for c in self.centroid_position],
            "parent_id": self.parent_id,
        }


@dataclass(frozen=True)
class Cluster:
    """
    A top-level territory.

    centroid_vector is the mean of the member embeddings in the original
    embedding space. It is intentionally not renormalized. It is empty for a
    single-material build.
    """

    id: str
    label: str
    member_ids: Tuple[str, ...]
    centroid_vector: Tuple[float, ...]
    centroid_position: Position
    sub_clusters: Tuple[SubCluster, ...] = ()

    @property
    def member_count(self) -> int:
        return len(self.member_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "member_ids": list(self.member_ids),
            "centroid_vector": [float(v) for v in self.centroid_vector],
            "centroid": [float(c) for c in self.centroid_position],
            "sub_clusters": [s.to_dict() for s in self.sub_clusters],
        }


@dataclass(frozen=True)
class DensityContour:
    """
    One iso-band of the weighted point density: every region where the
    density is >= value. Coordinates follow the GeoJSON MultiPolygon layout
    (polygons -> rings -> points; the first ring of a polygon is its outer
    boundary, any further rings are holes).
    """

    value: float
    coordinates: Tuple[Polygon, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "MultiPolygon",
            "value": float(self.value),
            "coordinates": [
                [[[float(x), float(y)] for x, y in ring] for ring in polygon]
                for polygon in self.coordinates
            ],
        }


@dataclass(frozen=True)
class TerritoryData:
    points: Tuple[MaterialPoint, ...] = ()
    clusters: Tuple[Cluster, ...] = ()
    contours: Tuple[DensityContour, ...] = ()
    tessellation: Optional["Tessellation"] = None
    bounds: Tuple[int, int] = (800, 600)
    _cluster_index: Dict[str, Cluster] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_cluster_index", {c.id: c for c in self.clusters})

    def cluster_by_id(self, cluster_id: str) -> Optional[Cluster]:
        return self._cluster_index.get(cluster_id)

    def points_of(self, cluster_id: str) -> List[MaterialPoint]:
        return [p for p in self.points if p.cluster_id == cluster_id]

    def to_dict(self) -> Dict[str, Any]:
        """Plain JSON-compatible representation (cells are exported as clipped polygons)."""
        cells = None
        if self.tessellation is not None:
            cells = [
                [[float(x), float(y)] for x, y in self.tessellation.cell_polygon(i)]
                for i in range(len(self.clusters))
            ]
        return {
            "points": [p.to_dict() for p in self.points],
            "clusters": [c.to_dict() for c in self.clusters],
            "contours": [c.to_dict() for c in self.contours],
            "cells": cells,
            "bounds": {"width": self.bounds[0], "height": self.bounds[1]},
        }
