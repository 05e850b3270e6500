#!/usr/bin/env python3
"""region.py

Study-region buffering and the core-zone flag.

The core zone is the plot eroded inward by the competitor search radius.
Only stems inside it may be focal trees: their whole neighborhood was
surveyed, so edge trees do not look artificially uncrowded.

Notes:
- Erosion that collapses the polygon returns an empty geometry, it is not
  an error here. Callers decide whether an empty core zone is fatal.
- Points on the eroded boundary count as inside.
"""

from __future__ import annotations

from typing import Iterable, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely
from shapely.errors import GEOSException
from shapely.geometry import Polygon
from shapely.geometry.base import BaseGeometry

from crowding.exceptions import InvalidGeometryError, InvalidParameterError


DIRECTIONS = ("in", "out")


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------

def _make_valid(geom: BaseGeometry) -> BaseGeometry:
    """Repair an invalid geometry.

    Tries shapely's make_valid first, then falls back to the buffer(0)
    trick (works but can alter geometry slightly).
    """
    try:
        fixed = shapely.make_valid(geom)
    except GEOSException:
        fixed = geom.buffer(0)
    # make_valid can return a collection mixing polygons with stray lines
    if fixed.geom_type == "GeometryCollection":
        polys = [g for g in fixed.geoms if g.geom_type in ("Polygon", "MultiPolygon")]
        fixed = shapely.union_all(polys) if polys else Polygon()
    return fixed


def region_from_coords(coords: Iterable[Tuple[float, float]]) -> Polygon:
    """Build a polygon from an ordered vertex list (closing vertex optional)."""
    coords = [(float(x), float(y)) for x, y in coords]
    if len(coords) < 3:
        raise InvalidGeometryError(f"polygon needs at least 3 vertices, got {len(coords)}")
    return Polygon(coords)


def to_points(table: pd.DataFrame, x: str = "gx", y: str = "gy") -> gpd.GeoDataFrame:
    """Attach point geometries (x, y) to a stem table.

    Returns a new GeoDataFrame without a CRS: plot coordinates are local
    planar units.
    """
    return gpd.GeoDataFrame(
        table.copy(),
        geometry=gpd.points_from_xy(table[x], table[y]),
    )


def _coords_of(points: Union[gpd.GeoDataFrame, pd.DataFrame], x: str, y: str) -> Tuple[np.ndarray, np.ndarray]:
    if isinstance(points, gpd.GeoDataFrame) and x not in points.columns:
        return points.geometry.x.to_numpy(dtype=float), points.geometry.y.to_numpy(dtype=float)
    return points[x].to_numpy(dtype=float), points[y].to_numpy(dtype=float)


# -----------------------------------------------------------------------------
# Core functions
# -----------------------------------------------------------------------------

def buffer_region(
    polygon: BaseGeometry,
    margin: float,
    direction: str = "in",
    *,
    repair: bool = False,
) -> BaseGeometry:
    """Erode ("in") or dilate ("out") a study region by margin.

    Args:
        polygon: Study-region boundary in plot coordinates.
        margin: Non-negative buffer distance in the same units.
        direction: "in" shrinks the region, "out" grows it.
        repair: Fix a self-intersecting input instead of rejecting it.

    Returns:
        A new geometry. Eroding past half the region's minimal width
        returns an empty polygon.

    Raises:
        InvalidParameterError: On negative margin or unknown direction.
        InvalidGeometryError: If the input is empty, or invalid and
            repair is False.
    """
    if direction not in DIRECTIONS:
        raise InvalidParameterError("direction", direction, f"expected one of {DIRECTIONS}")
    if margin is None or not np.isfinite(margin) or margin < 0:
        raise InvalidParameterError("margin", margin, "must be a finite non-negative distance")

    if polygon is None or polygon.is_empty:
        raise InvalidGeometryError("region is empty", margin, direction)
    if not polygon.is_valid:
        if not repair:
            raise InvalidGeometryError(
                f"region is not valid: {shapely.is_valid_reason(polygon)}", margin, direction
            )
        polygon = _make_valid(polygon)
        if polygon.is_empty:
            raise InvalidGeometryError("region is empty after repair", margin, direction)

    distance = -margin if direction == "in" else margin
    out = polygon.buffer(distance)
    if out.is_empty:
        # Keep a consistent geometry type for empty results
        return Polygon()
    return out


def core_zone(region: BaseGeometry, max_dist: float, *, repair: bool = False) -> BaseGeometry:
    """Region eroded by the competitor search radius."""
    return buffer_region(region, max_dist, "in", repair=repair)


def tag_in_region(
    points: Union[gpd.GeoDataFrame, pd.DataFrame],
    region: BaseGeometry,
    *,
    x: str = "gx",
    y: str = "gy",
) -> np.ndarray:
    """Boolean mask: which points lie in region (boundary included).

    Points with missing coordinates are never inside. An empty region
    tags nothing.
    """
    xs, ys = _coords_of(points, x, y)
    if region is None or region.is_empty or len(xs) == 0:
        return np.zeros(len(xs), dtype=bool)
    finite = np.isfinite(xs) & np.isfinite(ys)
    mask = np.zeros(len(xs), dtype=bool)
    shapely.prepare(region)
    mask[finite] = shapely.intersects_xy(region, xs[finite], ys[finite])
    return mask


def region_summary(region: BaseGeometry, core: BaseGeometry, margin: float) -> Sequence[str]:
    """Human-readable lines describing a region and its core zone."""
    lines = [f"region area={region.area:.1f} bounds={tuple(round(b, 2) for b in region.bounds)}"]
    if core.is_empty:
        lines.append(f"core zone (margin={margin}) is EMPTY")
    else:
        share = core.area / region.area if region.area else 0.0
        lines.append(f"core zone (margin={margin}) area={core.area:.1f} ({share:.1%} of region)")
    return lines
