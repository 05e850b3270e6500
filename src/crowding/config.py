#!/usr/bin/env python3
"""crowding.config

Shared configuration utilities for crowding CLI subsystems.

This module provides common helpers used across crowding.geo, crowding.features, etc.
Centralizing these avoids duplication and ensures consistent behavior.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- PipelineConfig is frozen; CLI overrides produce a new instance.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from crowding.exceptions import ConfigurationError


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    This strict behavior is intentional: config errors should fail fast.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------
# Used by geo.blocks (grid extent) and the CLIs (summaries).

BBox = Tuple[float, float, float, float]


def coerce_bbox(x: Any) -> Optional[BBox]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid or missing.
    Accepts lists, tuples, or anything indexable with 4 numeric elements.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
            return (xmin, ymin, xmax, ymax)
        except (TypeError, ValueError):
            return None
    return None


def union_bbox(bboxes: Iterable[BBox]) -> Optional[BBox]:
    """Compute the bounding box that contains all input bboxes.

    Returns None if input is empty.
    """
    bboxes = list(bboxes)
    if not bboxes:
        return None
    xmin = min(b[0] for b in bboxes)
    ymin = min(b[1] for b in bboxes)
    xmax = max(b[2] for b in bboxes)
    ymax = max(b[3] for b in bboxes)
    return (xmin, ymin, xmax, ymax)


def format_bbox(b: BBox, precision: int = 2) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Pipeline configuration
# -----------------------------------------------------------------------------

# ForestGEO census column names
DEFAULT_COLUMNS: Dict[str, str] = {
    "stem": "stemID",
    "tree": "treeID",
    "species": "sp",
    "quadrat": "quadrat",
    "x": "gx",
    "y": "gy",
    "dbh": "dbh",
    "date": "date",
    "status": "status",
    "codes": "codes",
}

LABELINGS = ("diagonal", "sequential")
NEIGHBOR_METHODS = ("grid", "naive")


@dataclass(frozen=True)
class PipelineConfig:
    """Parameters of one feature-table build.

    Attributes:
        max_dist: Competitor search radius, also the core-zone erosion margin.
        block_size: Side length of a cross-validation block.
        k: Number of folds.
        y_offset: Vertical grid offset as a fraction of block_size.
        group_universe: Ordered functional group labels.
        catch_all: Label that absorbs unknown species groups.
    """

    max_dist: float = 20.0
    block_size: float = 100.0
    k: int = 5
    y_offset: float = 0.0
    labeling: str = "diagonal"
    group_universe: Tuple[str, ...] = ()
    catch_all: Optional[str] = None
    dbh_scale: float = 1.0
    ba_scale: float = 1.0
    alive_codes: Tuple[str, ...] = ("A",)
    method: str = "grid"
    allow_empty_core: bool = False
    drop_undefined_growth: bool = True
    columns: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_COLUMNS))

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError on out-of-range values."""
        if not self.max_dist > 0:
            raise ConfigurationError(f"max_dist must be > 0 (got {self.max_dist})")
        if not self.block_size > 0:
            raise ConfigurationError(f"block_size must be > 0 (got {self.block_size})")
        if int(self.k) != self.k or self.k < 1:
            raise ConfigurationError(f"k must be a positive integer (got {self.k})")
        if not 0.0 <= self.y_offset < 1.0:
            raise ConfigurationError(f"y_offset must be in [0, 1) (got {self.y_offset})")
        if self.labeling not in LABELINGS:
            raise ConfigurationError(f"labeling must be one of {LABELINGS} (got {self.labeling!r})")
        if self.method not in NEIGHBOR_METHODS:
            raise ConfigurationError(f"method must be one of {NEIGHBOR_METHODS} (got {self.method!r})")
        if not self.dbh_scale > 0 or not self.ba_scale > 0:
            raise ConfigurationError("dbh_scale and ba_scale must be > 0")
        if len(set(self.group_universe)) != len(self.group_universe):
            raise ConfigurationError(f"Duplicate labels in group universe: {list(self.group_universe)}")
        if self.catch_all is not None and self.group_universe and self.catch_all not in self.group_universe:
            raise ConfigurationError(
                f"catch_all group {self.catch_all!r} must be listed in the group universe"
            )
        unknown = set(self.columns) - set(DEFAULT_COLUMNS)
        if unknown:
            raise ConfigurationError(f"Unknown column roles: {sorted(unknown)}")

    def column(self, role: str) -> str:
        """Return the census column name for a role like 'stem' or 'dbh'."""
        return self.columns.get(role, DEFAULT_COLUMNS[role])

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        """Return a new config with non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """Build a config from the nested pipeline YAML layout.

        Expects structure like:
            neighborhood: {max_dist: 20}
            folds: {block_size: 100, k: 5, y_offset: 0.0}
            groups: {universe: [...], catch_all: other}
            ...

        Missing sections fall back to defaults.
        """
        def section(name: str) -> Dict[str, Any]:
            value = data.get(name) or {}
            if not isinstance(value, dict):
                raise ConfigurationError(f"Config section '{name}' must be a mapping")
            return value

        columns = dict(DEFAULT_COLUMNS)
        columns.update({str(k): str(v) for k, v in section("columns").items()})

        neighborhood = section("neighborhood")
        folds = section("folds")
        groups = section("groups")
        units = section("units")
        census = section("census")
        core = section("core")
        features = section("features")

        universe = groups.get("universe") or []
        if not isinstance(universe, list):
            raise ConfigurationError("groups.universe must be a list of labels")
        catch_all = groups.get("catch_all")

        try:
            return cls(
                max_dist=float(neighborhood.get("max_dist", cls.max_dist)),
                method=str(neighborhood.get("method", cls.method)),
                block_size=float(folds.get("block_size", cls.block_size)),
                k=int(folds.get("k", cls.k)),
                y_offset=float(folds.get("y_offset", cls.y_offset)),
                labeling=str(folds.get("labeling", cls.labeling)),
                group_universe=tuple(str(g) for g in universe),
                catch_all=str(catch_all) if catch_all is not None else None,
                dbh_scale=float(units.get("dbh_scale", cls.dbh_scale)),
                ba_scale=float(units.get("ba_scale", cls.ba_scale)),
                alive_codes=tuple(str(c) for c in census.get("alive_codes", cls.alive_codes)),
                allow_empty_core=bool(core.get("allow_empty", cls.allow_empty_core)),
                drop_undefined_growth=bool(
                    features.get("drop_undefined_growth", cls.drop_undefined_growth)
                ),
                columns=columns,
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid pipeline config value: {e}") from e


def load_pipeline_config(path: Path) -> PipelineConfig:
    """Load a PipelineConfig from a pipeline YAML file."""
    return PipelineConfig.from_mapping(load_yaml(path))


def group_labels(config: PipelineConfig) -> List[str]:
    """Group universe as a list, with the catch-all appended if missing."""
    labels = list(config.group_universe)
    if config.catch_all is not None and config.catch_all not in labels:
        labels.append(config.catch_all)
    return labels


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_PIPELINE_YAML = Path("config/pipeline.yaml")
DEFAULT_FEATURES_CSV = Path("data/processed/tables/growth_features.csv")
DEFAULT_CORE_GPKG = Path("data/interim/vectors/core_zone.gpkg")
DEFAULT_BLOCKS_GPKG = Path("data/interim/vectors/cv_blocks.gpkg")
