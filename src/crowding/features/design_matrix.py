#!/usr/bin/env python3
"""design_matrix.py

Pivot the long (focal, competitor group, basal area) table into one row per
focal stem with one numeric column per competitor group.

Design notes:
- The group universe is passed in, never inferred, so a group with no
  observed interactions still gets its (all-zero) column and the regression
  formula downstream stays fixed.
- Group columns are ordered by how often each group occurs as a focal
  group, most frequent first; the catch-all group always goes last.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import pandas as pd

from crowding.exceptions import DataError, InvalidParameterError


LEADING_COLUMNS = ("group", "dbh", "fold", "growth")
DEFAULT_FOCAL_COLUMNS = ("sp", "group", "dbh", "fold", "growth", "gx", "gy")


def _check_universe(group_universe: Sequence[str], catch_all: Optional[str]) -> List[str]:
    universe = list(group_universe)
    if not universe:
        raise InvalidParameterError("group_universe", universe, "must list at least one group")
    dupes = sorted({g for g in universe if universe.count(g) > 1})
    if dupes:
        raise InvalidParameterError("group_universe", universe, f"duplicate labels {dupes}")
    if catch_all is not None and catch_all not in universe:
        raise InvalidParameterError("catch_all", catch_all, "must be one of the group universe labels")
    return universe


def order_groups(
    group_universe: Sequence[str],
    focal_groups: Iterable[str],
    catch_all: Optional[str] = None,
) -> List[str]:
    """Universe labels by descending focal-group frequency, catch-all last.

    Ties (including groups never seen as focal) keep universe order.
    """
    universe = _check_universe(group_universe, catch_all)
    counts = pd.Series(list(focal_groups), dtype=object).value_counts()
    position = {g: i for i, g in enumerate(universe)}
    ranked = sorted(
        (g for g in universe if g != catch_all),
        key=lambda g: (-int(counts.get(g, 0)), position[g]),
    )
    if catch_all is not None:
        ranked.append(catch_all)
    return ranked


def build_wide_table(
    aggregated: pd.DataFrame,
    group_universe: Sequence[str],
    *,
    id_col: str = "focal_id",
    focal_cols: Sequence[str] = DEFAULT_FOCAL_COLUMNS,
    focal_group_col: str = "group",
    group_col: str = "competitor_group",
    value_col: str = "basal_area",
    catch_all: Optional[str] = None,
) -> pd.DataFrame:
    """One row per focal stem, one zero-filled column per competitor group.

    Args:
        aggregated: Output of aggregate_neighbors (long form).
        group_universe: Every functional group label, in any order.
        id_col: Focal stem id column.
        focal_cols: Focal attributes carried through when present.
        focal_group_col: Focal functional group, used for column ordering.
        group_col: Competitor group column of the long table.
        value_col: Value summed into the group columns.
        catch_all: Label absorbing competitor groups outside the universe.

    Returns:
        A new DataFrame: id, focal group, dbh, fold, growth, any other
        focal columns, then the group columns. Rows sorted by focal id.

    Raises:
        DataError: If a competitor group is outside the universe and there
            is no catch-all, or a group label clashes with a focal column.
    """
    universe = _check_universe(group_universe, catch_all)

    attr_cols = [c for c in focal_cols if c in aggregated.columns and c != id_col]
    clash = sorted(set(attr_cols) & set(universe))
    if clash:
        raise DataError(f"Group labels clash with focal attribute columns: {clash}")

    attrs = aggregated[[id_col] + attr_cols].drop_duplicates(subset=[id_col]).reset_index(drop=True)

    data = aggregated.loc[aggregated[group_col].notna(), [id_col, group_col, value_col]].copy()
    unknown = ~data[group_col].isin(universe)
    if unknown.any():
        if catch_all is None:
            raise DataError(
                f"Competitor groups outside the universe: {sorted(map(str, data.loc[unknown, group_col].unique()))}"
            )
        data.loc[unknown, group_col] = catch_all

    focal_groups = attrs[focal_group_col] if focal_group_col in attrs.columns else []
    ordered = order_groups(universe, focal_groups, catch_all)

    # Zero-initialised key set per focal row, then accumulate
    if data.empty:
        pivot = pd.DataFrame(index=pd.Index(attrs[id_col].iloc[:0], name=id_col))
    else:
        pivot = data.pivot_table(
            index=id_col,
            columns=group_col,
            values=value_col,
            aggfunc="sum",
            fill_value=0.0,
        )
    pivot = pivot.reindex(columns=ordered, fill_value=0.0)
    pivot.columns.name = None

    wide = attrs.merge(pivot.reset_index(), on=id_col, how="left")
    wide[ordered] = wide[ordered].fillna(0.0).astype(float)

    leading = [c for c in LEADING_COLUMNS if c in attr_cols]
    rest = [c for c in attr_cols if c not in leading]
    wide = wide[[id_col] + leading + rest + ordered]
    return wide.sort_values(id_col, kind="mergesort").reset_index(drop=True)


def wide_to_long(
    wide: pd.DataFrame,
    groups: Sequence[str],
    *,
    id_col: str = "focal_id",
    group_col: str = "competitor_group",
    value_col: str = "basal_area",
    drop_zero: bool = True,
) -> pd.DataFrame:
    """Melt the group columns back to (id, group, value) rows."""
    long = wide.melt(id_vars=[id_col], value_vars=list(groups), var_name=group_col, value_name=value_col)
    if drop_zero:
        long = long[long[value_col] != 0]
    return long.sort_values([id_col, group_col], kind="mergesort").reset_index(drop=True)
