#!/usr/bin/env python3
"""neighbors.py

Focal-vs-competitor neighbor search and basal-area aggregation.

For every focal stem (inside the core zone) all stems within max_dist are
competitors, whatever their fold or core flag. Competitor basal area is
summed per competitor functional group.

Design notes:
- GridIndex buckets points by integer cell (floor(x / cell), floor(y / cell))
  with cell = max_dist, so one radius query touches at most a 3 x 3 block
  of cells. The index is never written after construction, so concurrent
  readers are safe.
- method="naive" is the O(n * m) scan; both methods return the same pairs.
- Distance is planar Euclidean, and the radius is inclusive (d <= max_dist).
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from crowding.exceptions import DataError, InvalidParameterError

logger = logging.getLogger(__name__)

METHODS = ("grid", "naive")

PAIR_COLUMNS = ["focal_id", "competitor_id", "distance", "competitor_group", "competitor_ba"]

DEFAULT_FOCAL_COLUMNS = ("sp", "group", "dbh", "growth", "fold", "gx", "gy")


def basal_area(dbh, scale: float = 1.0):
    """Cross-sectional area of a stem: pi / 4 * (dbh * scale) ** 2.

    Works on scalars, numpy arrays and pandas Series; NaN stays NaN.
    """
    d = dbh * scale
    return math.pi / 4.0 * d * d


# -----------------------------------------------------------------------------
# Spatial index
# -----------------------------------------------------------------------------

class GridIndex:
    """Uniform grid bucket index over a fixed point set.

    Buckets map an integer cell (cx, cy) to the array of point indices that
    fall in it. Points with non-finite coordinates are not indexed.
    """

    def __init__(self, xs: np.ndarray, ys: np.ndarray, cell_size: float):
        if cell_size is None or not np.isfinite(cell_size) or cell_size <= 0:
            raise InvalidParameterError("cell_size", cell_size, "must be > 0")
        self.cell_size = float(cell_size)
        self.xs = np.array(xs, dtype=float)
        self.ys = np.array(ys, dtype=float)
        self.xs.flags.writeable = False
        self.ys.flags.writeable = False
        self._buckets: Dict[Tuple[int, int], np.ndarray] = {}

        finite = np.flatnonzero(np.isfinite(self.xs) & np.isfinite(self.ys))
        if len(finite) == 0:
            return

        cx = np.floor(self.xs[finite] / self.cell_size).astype(np.int64)
        cy = np.floor(self.ys[finite] / self.cell_size).astype(np.int64)
        keys, inverse = np.unique(np.stack([cx, cy], axis=1), axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        order = np.argsort(inverse, kind="stable")
        counts = np.bincount(inverse, minlength=len(keys))
        for (kx, ky), members in zip(keys, np.split(finite[order], np.cumsum(counts)[:-1])):
            members.flags.writeable = False
            self._buckets[(int(kx), int(ky))] = members

    def __len__(self) -> int:
        return int(sum(len(v) for v in self._buckets.values()))

    @property
    def n_cells(self) -> int:
        return len(self._buckets)

    def query(self, x: float, y: float, radius: float) -> Tuple[np.ndarray, np.ndarray]:
        """Indices and distances of points within radius of (x, y).

        Results are sorted by point index.
        """
        if not (np.isfinite(x) and np.isfinite(y)):
            return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=float)
        cs = self.cell_size
        cx_lo, cx_hi = math.floor((x - radius) / cs), math.floor((x + radius) / cs)
        cy_lo, cy_hi = math.floor((y - radius) / cs), math.floor((y + radius) / cs)

        found: List[np.ndarray] = []
        for cx in range(cx_lo, cx_hi + 1):
            for cy in range(cy_lo, cy_hi + 1):
                members = self._buckets.get((cx, cy))
                if members is not None:
                    found.append(members)
        if not found:
            return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=float)

        idx = np.sort(np.concatenate(found))
        dist = np.hypot(self.xs[idx] - x, self.ys[idx] - y)
        keep = dist <= radius
        return idx[keep], dist[keep]


# -----------------------------------------------------------------------------
# Pair search
# -----------------------------------------------------------------------------

def _naive_query(xs: np.ndarray, ys: np.ndarray, x: float, y: float, radius: float) -> Tuple[np.ndarray, np.ndarray]:
    dist = np.hypot(xs - x, ys - y)
    idx = np.flatnonzero(dist <= radius)
    return idx, dist[idx]


def find_neighbor_pairs(
    focal: pd.DataFrame,
    all_points: pd.DataFrame,
    max_dist: float,
    id_col: str = "stemID",
    *,
    x: str = "gx",
    y: str = "gy",
    group_col: str = "group",
    dbh_col: str = "dbh",
    ba_scale: float = 1.0,
    method: str = "grid",
) -> pd.DataFrame:
    """Long table of (focal, competitor) pairs within max_dist.

    A stem is never its own competitor. Returns the columns in
    PAIR_COLUMNS, one row per pair, ordered by focal row then competitor
    position in all_points.
    """
    if method not in METHODS:
        raise InvalidParameterError("method", method, f"expected one of {METHODS}")
    if max_dist is None or not np.isfinite(max_dist) or max_dist <= 0:
        raise InvalidParameterError("max_dist", max_dist, "must be > 0")

    cx = all_points[x].to_numpy(dtype=float)
    cy = all_points[y].to_numpy(dtype=float)
    c_ids = all_points[id_col].to_numpy()
    c_groups = all_points[group_col].to_numpy() if group_col in all_points.columns else np.full(len(all_points), None)
    c_ba = basal_area(pd.to_numeric(all_points[dbh_col], errors="coerce").to_numpy(dtype=float), ba_scale)

    if method == "grid":
        index = GridIndex(cx, cy, max_dist)
        query = lambda fx, fy: index.query(fx, fy, max_dist)  # noqa: E731
    else:
        query = lambda fx, fy: _naive_query(cx, cy, fx, fy, max_dist)  # noqa: E731

    f_ids = focal[id_col].to_numpy()
    f_x = focal[x].to_numpy(dtype=float)
    f_y = focal[y].to_numpy(dtype=float)

    chunks: List[pd.DataFrame] = []
    for fid, fx, fy in zip(f_ids, f_x, f_y):
        idx, dist = query(fx, fy)
        keep = c_ids[idx] != fid
        idx, dist = idx[keep], dist[keep]
        if len(idx) == 0:
            continue
        chunks.append(
            pd.DataFrame(
                {
                    "focal_id": np.repeat(fid, len(idx)),
                    "competitor_id": c_ids[idx],
                    "distance": dist,
                    "competitor_group": c_groups[idx],
                    "competitor_ba": c_ba[idx],
                }
            )
        )

    if not chunks:
        return pd.DataFrame(
            {
                "focal_id": focal[id_col].iloc[:0].to_numpy(),
                "competitor_id": all_points[id_col].iloc[:0].to_numpy(),
                "distance": np.zeros(0, dtype=float),
                "competitor_group": np.zeros(0, dtype=object),
                "competitor_ba": np.zeros(0, dtype=float),
            }
        )
    pairs = pd.concat(chunks, ignore_index=True)
    logger.debug("find_neighbor_pairs: %d focal stems, %d pairs (method=%s)", len(focal), len(pairs), method)
    return pairs


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------

def _resolve_groups(table: pd.DataFrame, group_col: str, catch_all: Optional[str], label: str) -> pd.DataFrame:
    if group_col not in table.columns:
        raise DataError(f"{label} has no '{group_col}' column; assign functional groups first")
    missing = table[group_col].isna()
    if not missing.any():
        return table
    if catch_all is None:
        raise DataError(
            f"{int(missing.sum())} stems in {label} have no functional group and no catch-all group is configured"
        )
    out = table.copy()
    out.loc[missing, group_col] = catch_all
    return out


def aggregate_neighbors(
    focal_candidates: pd.DataFrame,
    all_points: pd.DataFrame,
    max_dist: float,
    id_col: str = "stemID",
    *,
    group_col: str = "group",
    dbh_col: str = "dbh",
    focal_cols: Sequence[str] = DEFAULT_FOCAL_COLUMNS,
    catch_all: Optional[str] = None,
    ba_scale: float = 1.0,
    method: str = "grid",
    x: str = "gx",
    y: str = "gy",
) -> pd.DataFrame:
    """Summed competitor basal area per (focal stem, competitor group).

    Args:
        focal_candidates: Stems allowed to be focal (in the core zone).
        all_points: Every stem that may compete, regardless of fold or core flag.
        max_dist: Search radius, inclusive.
        id_col: Stem id column in both tables.
        group_col: Functional group column in both tables.
        focal_cols: Focal attributes carried into the output when present.
        catch_all: Group that absorbs stems with no functional group.
        ba_scale: Diameter multiplier used before computing basal area.
        method: "grid" (indexed) or "naive" (pairwise scan).

    Returns:
        Columns ``focal_id``, the focal attributes, ``competitor_group``,
        ``basal_area`` and ``n_competitors``, sorted by focal id then group.
        A focal stem without competitors gets one row with a null group and
        zeros, so it is never dropped.
    """
    if focal_candidates[id_col].duplicated().any():
        raise DataError("Focal candidates contain duplicate stem ids")

    focal_candidates = _resolve_groups(focal_candidates, group_col, catch_all, "focal candidates")
    all_points = _resolve_groups(all_points, group_col, catch_all, "competitor stems")

    pairs = find_neighbor_pairs(
        focal_candidates,
        all_points,
        max_dist,
        id_col,
        x=x,
        y=y,
        group_col=group_col,
        dbh_col=dbh_col,
        ba_scale=ba_scale,
        method=method,
    )

    # Fixed summation order, so sums do not depend on input row order
    pairs = pairs.sort_values(["focal_id", "competitor_id"], kind="mergesort")
    agg = (
        pairs.groupby(["focal_id", "competitor_group"], sort=True)
        .agg(basal_area=("competitor_ba", "sum"), n_competitors=("competitor_id", "size"))
        .reset_index()
    )

    keep = [c for c in focal_cols if c in focal_candidates.columns and c != id_col]
    focal_attrs = focal_candidates[[id_col] + keep].rename(columns={id_col: "focal_id"})

    lonely = focal_attrs.loc[~focal_attrs["focal_id"].isin(agg["focal_id"]), ["focal_id"]].copy()
    if len(lonely):
        logger.debug("aggregate_neighbors: %d focal stems with an empty neighborhood", len(lonely))
    lonely["competitor_group"] = None
    lonely["basal_area"] = 0.0
    lonely["n_competitors"] = 0

    long = pd.concat([agg, lonely], ignore_index=True)
    long["basal_area"] = long["basal_area"].astype(float)
    long["n_competitors"] = long["n_competitors"].astype(np.int64)

    out = focal_attrs.merge(long, on="focal_id", how="inner", validate="one_to_many")
    out = out.sort_values(["focal_id", "competitor_group"], kind="mergesort", na_position="last")
    return out.reset_index(drop=True)
