#!/usr/bin/env python3
"""crowding.growth

Merge two census snapshots of the same stems into per-stem growth records.

Design notes:
- Inner join on the stem key: a stem seen in only one census has no
  growth and is simply omitted.
- Diameters are coerced to numbers; bad values become NaN growth rather
  than an exception.
- Coordinates, species and diameter come from the later census.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd

from crowding.exceptions import DataError, InvalidParameterError

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.25

# Carried from the later census when present
CARRY_COLUMNS = ["treeID", "sp", "quadrat", "gx", "gy", "group", "codes"]


def _check_unique(census: pd.DataFrame, stem_key: str, label: str) -> None:
    if stem_key not in census.columns:
        raise DataError(f"{label} has no '{stem_key}' column")
    dupes = census[stem_key][census[stem_key].duplicated()]
    if not dupes.empty:
        sample = sorted(map(str, dupes.unique()))[:10]
        raise DataError(f"{label} has duplicate stem ids: {sample}")


def _alive_mask(status: pd.Series, alive_codes: Iterable[str]) -> pd.Series:
    return status.astype(str).str.strip().isin(set(alive_codes))


def compile_growth(
    census1: pd.DataFrame,
    census2: pd.DataFrame,
    stem_key: str = "stemID",
    *,
    dbh_col: str = "dbh",
    date_col: str = "date",
    status_col: str = "status",
    dbh_scale: float = 1.0,
    alive_codes: Optional[Iterable[str]] = ("A",),
) -> pd.DataFrame:
    """Compute diametric growth between two censuses.

    Args:
        census1: Earlier census, one row per stem.
        census2: Later census, one row per stem.
        stem_key: Column joining the two censuses.
        dbh_col: Diameter column (same name in both censuses).
        date_col: Observation date column; skipped if absent.
        status_col: Status column; skipped if absent from either census.
        dbh_scale: Multiplier applied to both diameters before differencing,
            e.g. 10.0 to turn centimeters into millimeters.
        alive_codes: Status values treated as alive. None disables the filter.

    Returns:
        A new DataFrame with stem_key, the later-census attributes, ``dbh1``,
        ``dbh``, ``elapsed_days``, ``growth`` and ``annual_growth``.

    Raises:
        DataError: If a census lacks the stem key or repeats a stem id.
    """
    if not dbh_scale > 0:
        raise InvalidParameterError("dbh_scale", dbh_scale, "must be > 0")
    _check_unique(census1, stem_key, "census1")
    _check_unique(census2, stem_key, "census2")

    early = census1.copy()
    late = census2.copy()

    # --- Status filter: growth only exists for stems alive at both visits ---
    if alive_codes is not None and status_col in early.columns and status_col in late.columns:
        early = early[_alive_mask(early[status_col], alive_codes)]
        late = late[_alive_mask(late[status_col], alive_codes)]

    left_cols = [stem_key, dbh_col] + ([date_col] if date_col in early.columns else [])
    merged = late.merge(
        early[left_cols],
        on=stem_key,
        how="inner",
        suffixes=("", "_1"),
        validate="one_to_one",
    )

    dropped = len(census1) - len(merged)
    logger.debug("compile_growth: %d stems matched, %d earlier stems without a match", len(merged), dropped)

    dbh2 = pd.to_numeric(merged[dbh_col], errors="coerce") * dbh_scale
    dbh1 = pd.to_numeric(merged[f"{dbh_col}_1"], errors="coerce") * dbh_scale

    out = pd.DataFrame({stem_key: merged[stem_key].to_numpy()})
    for c in CARRY_COLUMNS:
        if c in merged.columns and c != stem_key:
            out[c] = merged[c].to_numpy()

    out["dbh1"] = dbh1.to_numpy(dtype=float)
    out["dbh"] = dbh2.to_numpy(dtype=float)

    if date_col in merged.columns and f"{date_col}_1" in merged.columns:
        d2 = pd.to_datetime(merged[date_col], errors="coerce")
        d1 = pd.to_datetime(merged[f"{date_col}_1"], errors="coerce")
        elapsed = (d2 - d1).dt.total_seconds() / 86400.0
        out["elapsed_days"] = elapsed.to_numpy(dtype=float)
    else:
        out["elapsed_days"] = np.nan

    out["growth"] = out["dbh"] - out["dbh1"]

    years = out["elapsed_days"] / DAYS_PER_YEAR
    out["annual_growth"] = (out["growth"] / years).where(years > 0)

    if status_col in merged.columns:
        out[status_col] = merged[status_col].to_numpy()

    return out


def growth_summary(growth: pd.DataFrame) -> List[str]:
    """Short human-readable summary lines for CLI output."""
    n = len(growth)
    undefined = int(growth["growth"].isna().sum()) if n else 0
    lines = [f"{n} stems with two observations ({undefined} with undefined growth)"]
    if n - undefined:
        g = growth["growth"].dropna()
        lines.append(f"growth: mean={g.mean():.3f} min={g.min():.3f} max={g.max():.3f}")
    return lines
