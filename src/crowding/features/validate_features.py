#!/usr/bin/env python3
"""
validate_features.py

##### Goal
- QA on the wide feature table before it reaches the model fit.
##### Checks
- one row per focal stem
- every group column present, numeric, no NaN, no negative basal area
- fold ids inside [1, k]
- growth defined for every focal stem
"""

from __future__ import annotations

from typing import List, Sequence

import pandas as pd
from pandas.api.types import is_numeric_dtype

from crowding.exceptions import DataError


def validate_wide_table(
    wide: pd.DataFrame,
    groups: Sequence[str],
    k: int,
    *,
    id_col: str = "focal_id",
) -> List[str]:
    """Return a list of problems; empty means the table passed."""
    problems: List[str] = []

    if id_col not in wide.columns:
        return [f"missing id column '{id_col}'"]

    dupes = wide[id_col][wide[id_col].duplicated()]
    if not dupes.empty:
        problems.append(f"{dupes.nunique()} duplicate focal ids (e.g. {dupes.iloc[0]})")

    for g in groups:
        if g not in wide.columns:
            problems.append(f"missing group column '{g}'")
            continue
        col = wide[g]
        if not is_numeric_dtype(col):
            problems.append(f"group column '{g}' is not numeric")
            continue
        if col.isna().any():
            problems.append(f"group column '{g}' has {int(col.isna().sum())} missing values")
        if (col < 0).any():
            problems.append(f"group column '{g}' has negative basal area")

    if "fold" in wide.columns:
        out_of_range = ~wide["fold"].between(1, k)
        if out_of_range.any():
            problems.append(f"{int(out_of_range.sum())} rows with fold outside [1, {k}]")
    else:
        problems.append("missing 'fold' column")

    if "growth" in wide.columns:
        n_nan = int(wide["growth"].isna().sum())
        if n_nan:
            problems.append(f"{n_nan} focal stems with undefined growth")
    else:
        problems.append("missing 'growth' column")

    return problems


def assert_valid_wide_table(wide: pd.DataFrame, groups: Sequence[str], k: int, *, id_col: str = "focal_id") -> None:
    """Raise DataError listing every problem found."""
    problems = validate_wide_table(wide, groups, k, id_col=id_col)
    if problems:
        raise DataError("Feature table failed validation:\n  - " + "\n  - ".join(problems))
