#!/usr/bin/env python3
"""build_features.py

*how two censuses become a design matrix*

End-to-end feature build for the growth-competition model:

    census1, census2
      -> compile_growth          (crowding.growth)
      -> assign_groups           (crowding.ingest.census)
      -> core-zone flag          (crowding.geo.region)
      -> fold id                 (crowding.geo.blocks)
      -> aggregate_neighbors     (crowding.features.neighbors)
      -> build_wide_table        (crowding.features.design_matrix)

Notes:
- Competitors are every stem of the growth table; only focal eligibility
  is restricted to the core zone.
- Same inputs -> same features. Nothing here is random.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

import pandas as pd
from shapely.geometry.base import BaseGeometry

from crowding.config import DEFAULT_COLUMNS, PipelineConfig
from crowding.exceptions import ConfigurationError, InvalidGeometryError
from crowding.features.design_matrix import build_wide_table, order_groups
from crowding.features.neighbors import aggregate_neighbors
from crowding.geo.blocks import BlockGrid, fold_block_table, grid_for_points, label_blocks
from crowding.geo.region import core_zone, tag_in_region
from crowding.growth import compile_growth, growth_summary
from crowding.ingest.census import assign_groups

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureTable:
    """Everything one build produces.

    Attributes:
        growth: Growth records with ``group``, ``in_core``, ``block_id`` and ``fold``.
        neighbors: Long aggregated neighbor table.
        wide: One row per focal stem, one column per competitor group.
        core_zone: The eroded study region.
        groups: Group columns of ``wide``, in order.
        grid: Block grid the folds were taken from.
    """

    growth: pd.DataFrame
    neighbors: pd.DataFrame
    wide: pd.DataFrame
    core_zone: BaseGeometry
    groups: List[str]
    grid: BlockGrid

    @property
    def n_focal(self) -> int:
        return len(self.wide)

    def summary(self) -> List[str]:
        """Human-friendly summary lines."""
        lines = growth_summary(self.growth) + [
            f"{len(self.growth)} stems located, {int(self.growth['in_core'].sum())} in core zone",
            f"{self.n_focal} focal stems x {len(self.groups)} competitor groups",
        ]
        if len(self.growth):
            per_fold = fold_block_table(self.growth["block_id"], self.growth["fold"])
            for row in per_fold.itertuples(index=False):
                lines.append(f"fold {row.fold}: {row.n_blocks} blocks, {row.n_stems} stems")
        if len(self.wide):
            lonely = int((self.wide[self.groups].sum(axis=1) == 0).sum())
            lines.append(f"{lonely} focal stems with an empty neighborhood")
        return lines


def build_feature_table(
    census1: pd.DataFrame,
    census2: pd.DataFrame,
    region: BaseGeometry,
    group_lookup: Optional[Mapping[str, str]],
    config: PipelineConfig,
) -> FeatureTable:
    """Run the whole feature pipeline on two canonical census tables.

    Args:
        census1, census2: Censuses with canonical column names
            (see crowding.ingest.census.read_census).
        region: Study-region polygon in plot coordinates.
        group_lookup: Species -> functional group label. None means the
            censuses already carry a ``group`` column.
        config: Pipeline parameters.

    Raises:
        ConfigurationError: If no group universe is configured.
        InvalidGeometryError: If the region is unusable, or the core zone is
            empty and config.allow_empty_core is False.
    """
    if not config.group_universe:
        raise ConfigurationError("groups.universe must list the functional group labels")

    stem = DEFAULT_COLUMNS["stem"]
    x, y = DEFAULT_COLUMNS["x"], DEFAULT_COLUMNS["y"]

    # --- Growth ---
    growth = compile_growth(
        census1,
        census2,
        stem,
        dbh_scale=config.dbh_scale,
        alive_codes=config.alive_codes,
    )
    if group_lookup is not None:
        growth = assign_groups(growth, group_lookup, catch_all=config.catch_all)

    located = growth[x].notna() & growth[y].notna()
    if not located.all():
        logger.warning("Dropping %d stems without coordinates", int((~located).sum()))
        growth = growth[located].reset_index(drop=True)

    # --- Core zone ---
    core = core_zone(region, config.max_dist)
    if core.is_empty and not config.allow_empty_core:
        raise InvalidGeometryError("core zone is empty after erosion", config.max_dist, "in")

    # --- Folds ---
    grid = grid_for_points(
        growth[x].to_numpy(dtype=float),
        growth[y].to_numpy(dtype=float),
        region,
        config.block_size,
        config.y_offset,
    )
    block_id, fold = label_blocks(growth, grid, config.k, config.labeling)
    growth = growth.assign(in_core=tag_in_region(growth, core), block_id=block_id, fold=fold)

    # --- Neighbors ---
    focal = growth[growth["in_core"]]
    if config.drop_undefined_growth:
        focal = focal[focal["growth"].notna()]
    logger.info("Focal candidates: %d of %d stems", len(focal), len(growth))

    neighbors = aggregate_neighbors(
        focal,
        growth,
        config.max_dist,
        stem,
        catch_all=config.catch_all,
        ba_scale=config.ba_scale,
        method=config.method,
    )

    # --- Design matrix ---
    wide = build_wide_table(neighbors, config.group_universe, catch_all=config.catch_all)
    groups = order_groups(config.group_universe, wide["group"] if "group" in wide.columns else [], config.catch_all)

    return FeatureTable(growth=growth, neighbors=neighbors, wide=wide, core_zone=core, groups=groups, grid=grid)


# -----------------------------------------------------------------------------
# Table I/O
# -----------------------------------------------------------------------------

def write_table(df: pd.DataFrame, path: Path) -> None:
    """Write CSV or parquet, chosen by file suffix."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".parquet":
        df.to_parquet(path, index=False)
    else:
        df.to_csv(path, index=False)


def read_table(path: Path) -> pd.DataFrame:
    """Read a table written by write_table."""
    if not path.exists():
        raise SystemExit(f"Table not found: {path}")
    if path.suffix.lower() == ".parquet":
        return pd.read_parquet(path)
    return pd.read_csv(path)
