# territory/geometry.py
"""
Planar geometry for territory maps.

density_contours:
    Weighted gaussian KDE (sklearn KernelDensity) evaluated on a regular
    grid of cell_size px, turned into iso-bands with contourpy. Each band
    covers the region where density >= its threshold.

Tessellation:
    Voronoi cells over cluster centroids (scipy.spatial.Voronoi), clipped to
    the canvas box with shapely, plus nearest-centroid point location
    (scipy cKDTree). Sites are mirrored across the four canvas edges before
    triangulation, which makes every original cell finite and bounded by the
    canvas.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import Voronoi, cKDTree
from shapely.geometry import Polygon as ShapelyPolygon
from shapely.geometry import box

from .models import DensityContour, MaterialPoint

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

Position = Tuple[float, float]

DEFAULT_CELL_SIZE = 8.0
DEFAULT_BANDWIDTH = 30.0
DEFAULT_THRESHOLDS = 10
MIN_CONTOUR_POINTS = 3
MIN_TESSELLATION_SITES = 2


# ------------------------
# Density contours
# ------------------------
def density_grid(
    xy: np.ndarray,
    weights: np.ndarray,
    width: float,
    height: float,
    cell_size: float = DEFAULT_CELL_SIZE,
    bandwidth: float = DEFAULT_BANDWIDTH,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Weighted density on the canvas grid.

    Returns:
        (xs, ys, z) with z of shape (len(ys), len(xs)). z integrates to the
        total weight, i.e. it is a weighted point count per square px.
    """
    from sklearn.neighbors import KernelDensity

    xs = np.arange(0.0, width + cell_size, cell_size)
    ys = np.arange(0.0, height + cell_size, cell_size)
    gx, gy = np.meshgrid(xs, ys)

    kde = KernelDensity(kernel="gaussian", bandwidth=bandwidth)
    kde.fit(xy, sample_weight=weights)
    log_dens = kde.score_samples(np.column_stack([gx.ravel(), gy.ravel()]))
    z = np.exp(log_dens).reshape(gx.shape) * float(weights.sum())
    return xs, ys, z


def iso_levels(peak: float, count: int = DEFAULT_THRESHOLDS) -> np.ndarray:
    """`count` evenly spaced levels strictly between 0 and peak."""
    return np.linspace(0.0, peak, count + 2)[1:-1]


def density_contours(
    points: Sequence[MaterialPoint],
    width: float,
    height: float,
    cell_size: float = DEFAULT_CELL_SIZE,
    bandwidth: float = DEFAULT_BANDWIDTH,
    thresholds: int = DEFAULT_THRESHOLDS,
) -> List[DensityContour]:
    """Iso-bands of the weighted point density; [] for fewer than 3 points."""
    if len(points) < MIN_CONTOUR_POINTS:
        return []

    from contourpy import FillType, contour_generator

    xy = np.array([[p.x, p.y] for p in points], dtype="float64")
    weights = np.array([p.weight for p in points], dtype="float64")
    xs, ys, z = density_grid(xy, weights, width, height, cell_size, bandwidth)

    peak = float(z.max())
    if not np.isfinite(peak) or peak <= 0:
        return []

    gen = contour_generator(xs, ys, z, fill_type=FillType.OuterOffset)
    ceiling = peak * 2.0 + 1.0
    contours: List[DensityContour] = []
    for level in iso_levels(peak, thresholds):
        point_arrays, offset_arrays = gen.filled(float(level), ceiling)
        polygons = []
        for pts, offsets in zip(point_arrays, offset_arrays):
            rings = tuple(
                tuple((float(x), float(y)) for x, y in pts[offsets[i] : offsets[i + 1]])
                for i in range(len(offsets) - 1)
            )
            polygons.append(rings)
        contours.append(DensityContour(value=float(level), coordinates=tuple(polygons)))
    return contours


# ------------------------
# Voronoi tessellation
# ------------------------
def _mirror(sites: np.ndarray, width: float, height: float) -> np.ndarray:
    left = sites.copy()
    left[:, 0] = -left[:, 0]
    right = sites.copy()
    right[:, 0] = 2 * width - right[:, 0]
    top = sites.copy()
    top[:, 1] = -top[:, 1]
    bottom = sites.copy()
    bottom[:, 1] = 2 * height - bottom[:, 1]
    return np.vstack([sites, left, right, top, bottom])


class Tessellation:
    """
    Voronoi subdivision of the canvas keyed by site index (cluster index).

    Coinciding sites share one cell; find() then reports the lowest index.
    """

    def __init__(self, sites: Sequence[Position], width: float, height: float):
        self.sites = np.asarray(sites, dtype="float64").reshape(-1, 2)
        self.width = float(width)
        self.height = float(height)
        self._canvas = box(0.0, 0.0, self.width, self.height)

        unique, first_index, inverse = np.unique(
            self.sites, axis=0, return_index=True, return_inverse=True
        )
        self._unique_sites = unique
        self._owner = first_index  # unique site -> lowest site index
        self._site_to_unique = np.asarray(inverse).ravel()

        self._tree = cKDTree(unique)
        self._cells = self._build_cells(unique)

    def _build_cells(self, unique: np.ndarray) -> List[ShapelyPolygon]:
        clipped = np.clip(unique, [0.0, 0.0], [self.width, self.height])
        vor = Voronoi(_mirror(clipped, self.width, self.height))
        cells = []
        for i in range(len(unique)):
            region = vor.regions[vor.point_region[i]]
            if not region or -1 in region:
                logger.error("Unbounded Voronoi region for site %d; using empty cell", i)
                cells.append(ShapelyPolygon())
                continue
            cell = ShapelyPolygon(vor.vertices[region]).intersection(self._canvas)
            cells.append(cell)
        return cells

    def __len__(self) -> int:
        return self.sites.shape[0]

    def find(self, x: float, y: float) -> Optional[int]:
        """Index of the site whose cell contains (x, y); None outside the canvas."""
        if not (0.0 <= x <= self.width and 0.0 <= y <= self.height):
            return None
        _, nearest = self._tree.query([x, y])
        return int(self._owner[int(nearest)])

    def cell_polygon(self, index: int) -> List[Position]:
        """Closed ring of the clipped cell of site `index` ([] if degenerate)."""
        cell = self._cells[int(self._site_to_unique[index])]
        if cell.is_empty or cell.geom_type != "Polygon":
            return []
        return [(float(x), float(y)) for x, y in cell.exterior.coords]

    def cell_area(self, index: int) -> float:
        return float(self._cells[int(self._site_to_unique[index])].area)


def build_tessellation(sites: Sequence[Position], width: float, height: float) -> Optional[Tessellation]:
    """Voronoi over cluster centroids; None for fewer than 2 sites."""
    if len(sites) < MIN_TESSELLATION_SITES:
        return None
    return Tessellation(sites, width, height)
