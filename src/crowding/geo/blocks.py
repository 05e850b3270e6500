#!/usr/bin/env python3
"""blocks.py

Spatially blocked cross-validation folds.

The plot is covered by a regular grid of square blocks and every block is
given one fold label. A stem inherits the fold of the block containing it,
so neighbouring stems (which share competitors) tend to land in the same
fold and spatial autocorrelation does not leak between train and
validation splits.

Design notes:
- No randomness anywhere: folds are a pure function of coordinates, grid
  parameters and k.
- Blocks are half-open [x0, x0 + s) x [y0, y0 + s). Points on the grid's
  outer right/top edge close into the last block.
- "diagonal" labels come from the block's (row, col) only, so the layout
  partitions the full grid whether or not a block is occupied.
  "sequential" labels depend on which blocks hold stems.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from crowding.config import BBox, coerce_bbox, union_bbox
from crowding.exceptions import DataError, FoldCountWarning, InvalidParameterError


LABELINGS = ("diagonal", "sequential")


@dataclass(frozen=True)
class BlockGrid:
    """A regular grid of square blocks.

    Attributes:
        x0: Left edge of column 0.
        y0: Bottom edge of row 0 (already shifted by the y offset).
        block_size: Side length of a block.
        n_cols: Number of block columns.
        n_rows: Number of block rows.
    """

    x0: float
    y0: float
    block_size: float
    n_cols: int
    n_rows: int

    @property
    def n_blocks(self) -> int:
        return self.n_cols * self.n_rows

    def locate(self, xs: np.ndarray, ys: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Return (row, col) index arrays for each point."""
        cols = np.floor((np.asarray(xs, dtype=float) - self.x0) / self.block_size).astype(np.int64)
        rows = np.floor((np.asarray(ys, dtype=float) - self.y0) / self.block_size).astype(np.int64)
        # Outer right/top edge closes into the last block
        cols = np.clip(cols, 0, self.n_cols - 1)
        rows = np.clip(rows, 0, self.n_rows - 1)
        return rows, cols

    def block_id(self, rows: np.ndarray, cols: np.ndarray) -> np.ndarray:
        """Row-major linear block id."""
        return np.asarray(rows) * self.n_cols + np.asarray(cols)

    def fold_of(
        self,
        rows: np.ndarray,
        cols: np.ndarray,
        k: int,
        labeling: str = "diagonal",
        occupied: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Fold label in [1, k] for each block.

        "diagonal" shifts every row by a fixed step so blocks sharing an
        edge never share a fold (for k >= 2), nor do blocks sharing a
        corner (for k >= 4). "sequential" walks the occupied blocks in
        row-major order and deals labels round-robin, so per-fold block
        counts differ by at most one.

        Args:
            rows, cols: Block indices to label.
            k: Number of folds.
            labeling: "diagonal" or "sequential".
            occupied: Block ids that hold stems, for "sequential". Defaults
                to the distinct blocks of rows/cols.
        """
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        if labeling == "diagonal":
            shift = 2 if k >= 4 else 1
            return ((cols + shift * rows) % k) + 1
        if labeling == "sequential":
            ids = self.block_id(rows, cols)
            occupied = np.unique(ids if occupied is None else np.asarray(occupied, dtype=np.int64))
            if not np.isin(ids, occupied).all():
                raise InvalidParameterError("occupied", occupied, "must contain every labelled block")
            rank = np.searchsorted(occupied, ids)
            return (rank % k) + 1
        raise InvalidParameterError("labeling", labeling, f"expected one of {LABELINGS}")

    def block_bounds(self, row: int, col: int) -> BBox:
        xmin = self.x0 + col * self.block_size
        ymin = self.y0 + row * self.block_size
        return (xmin, ymin, xmin + self.block_size, ymin + self.block_size)

    def to_geodataframe(
        self,
        k: int,
        labeling: str = "diagonal",
        occupied: Optional[np.ndarray] = None,
    ) -> gpd.GeoDataFrame:
        """Render blocks as polygons with their fold labels.

        With occupied, only those blocks are rendered and "sequential"
        labels match assign_folds on the same stems. Without it every grid
        block is rendered and treated as occupied.
        """
        if occupied is None:
            ids = np.arange(self.n_blocks)
        else:
            ids = np.unique(np.asarray(occupied, dtype=np.int64))
        rows, cols = np.divmod(ids, self.n_cols)
        folds = self.fold_of(rows, cols, k, labeling)
        return gpd.GeoDataFrame(
            {
                "block_id": self.block_id(rows, cols),
                "row": rows,
                "col": cols,
                "fold": folds,
            },
            geometry=[box(*self.block_bounds(r, c)) for r, c in zip(rows, cols)],
        )


# -----------------------------------------------------------------------------
# Validation helpers
# -----------------------------------------------------------------------------

def _check_params(block_size: float, k: int, y_offset: float, labeling: str) -> None:
    if block_size is None or not np.isfinite(block_size) or block_size <= 0:
        raise InvalidParameterError("block_size", block_size, "must be > 0")
    if int(k) != k or k < 1:
        raise InvalidParameterError("k", k, "must be a positive integer")
    if not 0.0 <= y_offset < 1.0:
        raise InvalidParameterError("y_offset", y_offset, "must be a fraction in [0, 1)")
    if labeling not in LABELINGS:
        raise InvalidParameterError("labeling", labeling, f"expected one of {LABELINGS}")


def _region_bbox(region: Union[BaseGeometry, Sequence[float], None]) -> Optional[BBox]:
    if region is None:
        return None
    if isinstance(region, BaseGeometry):
        return None if region.is_empty else tuple(float(b) for b in region.bounds)  # type: ignore[return-value]
    bbox = coerce_bbox(list(region))
    if bbox is None:
        raise InvalidParameterError("bounding_region", region, "expected a geometry or [xmin, ymin, xmax, ymax]")
    return bbox


# -----------------------------------------------------------------------------
# Core functions
# -----------------------------------------------------------------------------

def build_block_grid(bounds: BBox, block_size: float, y_offset: float = 0.0) -> BlockGrid:
    """Lay a grid of block_size squares over bounds.

    The grid starts at the bounds' lower-left corner, moved down by
    y_offset * block_size, and has just enough rows and columns to cover
    the bounds (at least one of each).
    """
    _check_params(block_size, 1, y_offset, "diagonal")
    xmin, ymin, xmax, ymax = bounds
    x0 = float(xmin)
    y0 = float(ymin) - y_offset * block_size
    n_cols = max(1, math.ceil((xmax - x0) / block_size))
    n_rows = max(1, math.ceil((ymax - y0) / block_size))
    return BlockGrid(x0=x0, y0=y0, block_size=float(block_size), n_cols=n_cols, n_rows=n_rows)


def grid_for_points(
    xs: np.ndarray,
    ys: np.ndarray,
    bounding_region: Union[BaseGeometry, Sequence[float], None],
    block_size: float,
    y_offset: float = 0.0,
) -> BlockGrid:
    """Grid covering both the region bounds and every point."""
    boxes = []
    region_bbox = _region_bbox(bounding_region)
    if region_bbox is not None:
        boxes.append(region_bbox)
    if len(xs):
        boxes.append((float(np.min(xs)), float(np.min(ys)), float(np.max(xs)), float(np.max(ys))))
    bounds = union_bbox(boxes)
    if bounds is None:
        raise InvalidParameterError("bounding_region", bounding_region, "no region bounds and no points")
    return build_block_grid(bounds, block_size, y_offset)


def _point_coords(points: pd.DataFrame, x: str, y: str) -> Tuple[np.ndarray, np.ndarray]:
    if isinstance(points, gpd.GeoDataFrame) and x not in points.columns:
        xs = points.geometry.x.to_numpy(dtype=float)
        ys = points.geometry.y.to_numpy(dtype=float)
    else:
        xs = points[x].to_numpy(dtype=float)
        ys = points[y].to_numpy(dtype=float)
    if not (np.isfinite(xs).all() and np.isfinite(ys).all()):
        raise DataError("Cannot assign folds: some stems have missing coordinates")
    return xs, ys


def _label_coords(
    grid: BlockGrid,
    xs: np.ndarray,
    ys: np.ndarray,
    k: int,
    labeling: str,
) -> Tuple[np.ndarray, np.ndarray]:
    rows, cols = grid.locate(xs, ys)
    ids = grid.block_id(rows, cols)
    occupied = np.unique(ids)
    if k > len(occupied):
        warnings.warn(
            f"k={k} folds but only {len(occupied)} occupied blocks "
            f"(block_size={grid.block_size:g}); some folds will be empty or small",
            FoldCountWarning,
            stacklevel=3,
        )
    return ids, grid.fold_of(rows, cols, int(k), labeling, occupied=occupied)


def label_blocks(
    points: pd.DataFrame,
    grid: BlockGrid,
    k: int,
    labeling: str = "diagonal",
    *,
    x: str = "gx",
    y: str = "gy",
) -> Tuple[np.ndarray, np.ndarray]:
    """Block id and fold id of every point on an existing grid.

    Both arrays come from one locate() call, so a stem's fold is always
    the fold of its block. Emits FoldCountWarning like assign_folds.
    """
    _check_params(grid.block_size, k, 0.0, labeling)
    xs, ys = _point_coords(points, x, y)
    if len(xs) == 0:
        empty = np.zeros(0, dtype=np.int64)
        return empty, empty.copy()
    return _label_coords(grid, xs, ys, k, labeling)


def assign_folds(
    points: pd.DataFrame,
    bounding_region: Union[BaseGeometry, Sequence[float], None],
    block_size: float,
    k: int,
    y_offset: float = 0.0,
    *,
    labeling: str = "diagonal",
    x: str = "gx",
    y: str = "gy",
) -> np.ndarray:
    """Fold id in [1, k] for every point.

    Args:
        points: Stem table with x/y columns, or a point GeoDataFrame.
        bounding_region: Plot polygon or [xmin, ymin, xmax, ymax]; the grid
            covers it and every point.
        block_size: Side length of a block, in plot units.
        k: Number of folds.
        y_offset: Vertical grid shift as a fraction of block_size.
        labeling: "diagonal" (default) or "sequential".

    Emits FoldCountWarning (and still assigns every point) when k exceeds
    the number of occupied blocks.
    """
    _check_params(block_size, k, y_offset, labeling)
    xs, ys = _point_coords(points, x, y)
    if len(xs) == 0:
        return np.zeros(0, dtype=np.int64)

    grid = grid_for_points(xs, ys, bounding_region, block_size, y_offset)
    return _label_coords(grid, xs, ys, k, labeling)[1]


def fold_block_table(block_ids: np.ndarray, folds: np.ndarray, k: Optional[int] = None) -> pd.DataFrame:
    """Count occupied blocks and stems per fold.

    With k, every fold 1..k gets a row, empty folds included.
    """
    df = pd.DataFrame({"block_id": np.asarray(block_ids), "fold": np.asarray(folds)})
    out = df.groupby("fold").agg(n_blocks=("block_id", "nunique"), n_stems=("block_id", "size"))
    if k is not None:
        out = out.reindex(pd.RangeIndex(1, int(k) + 1, name="fold"), fill_value=0)
    return out.reset_index()
