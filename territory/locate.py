# territory/locate.py
"""Point-in-territory lookup against a built TerritoryData."""

from typing import Optional

from .models import Cluster, SubCluster, TerritoryData


def locate(territory: TerritoryData, x: float, y: float) -> Optional[Cluster]:
    """
    Cluster whose Voronoi cell contains (x, y).

    Returns None when the territory has no tessellation (fewer than two
    clusters) or the point lies outside every cell (outside the canvas).
    """
    if territory.tessellation is None or len(territory.clusters) < 2:
        return None
    index = territory.tessellation.find(x, y)
    if index is None or index >= len(territory.clusters):
        return None
    return territory.clusters[index]


def locate_sub_cluster(territory: TerritoryData, x: float, y: float) -> Optional[SubCluster]:
    """
    Finer lookup for zoomed-in views: the sub-cluster of the located cluster
    whose centroid is nearest to (x, y). None if the cluster has no sub-clusters.
    """
    cluster = locate(territory, x, y)
    if cluster is None or not cluster.sub_clusters:
        return None
    return min(
        cluster.sub_clusters,
        key=lambda s: (s.centroid_position[0] - x) ** 2 + (s.centroid_position[1] - y) ** 2,
    )
