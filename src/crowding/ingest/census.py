#!/usr/bin/env python3
"""census.py

Thin readers for the pipeline inputs: census tables, the species-to-group
lookup table, and the study-region boundary.

V0 scope (intentionally restrained):
- Read CSV census files and rename configured columns to canonical names
- Parse dates, leave diameter coercion to crowding.growth
- Map species codes to functional group labels (unknown -> catch-all)
- Read the plot boundary from any vector file geopandas can open,
  or from a CSV of polygon vertices
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Mapping, Optional

import geopandas as gpd
import pandas as pd
import shapely
from shapely.geometry.base import BaseGeometry

from crowding.config import DEFAULT_COLUMNS
from crowding.exceptions import DataError, InvalidGeometryError
from crowding.geo.region import region_from_coords


# -----------------------------------------------------------------------------
# Census tables
# -----------------------------------------------------------------------------

def read_census(path: Path, columns: Optional[Mapping[str, str]] = None) -> pd.DataFrame:
    """Read one census CSV and return it with canonical column names.

    Args:
        path: CSV file, one row per stem.
        columns: Role -> source column mapping (see config.DEFAULT_COLUMNS).
            Roles whose column is absent from the file are skipped.

    Raises:
        SystemExit: If the file does not exist.
        DataError: If the stem id or coordinate columns are missing.
    """
    if not path.exists():
        raise SystemExit(f"Census file not found: {path}")

    columns = dict(columns or DEFAULT_COLUMNS)
    df = pd.read_csv(path, dtype={columns.get("stem", "stemID"): str})
    df.columns = df.columns.str.strip()

    rename = {src: DEFAULT_COLUMNS[role] for role, src in columns.items() if src in df.columns}
    df = df.rename(columns=rename)

    required = [DEFAULT_COLUMNS["stem"], DEFAULT_COLUMNS["x"], DEFAULT_COLUMNS["y"], DEFAULT_COLUMNS["dbh"]]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise DataError(f"{path} is missing required census columns: {missing}")

    date_col = DEFAULT_COLUMNS["date"]
    if date_col in df.columns:
        df[date_col] = pd.to_datetime(df[date_col], errors="coerce")

    species_col = DEFAULT_COLUMNS["species"]
    if species_col in df.columns:
        df[species_col] = df[species_col].astype(str).str.strip()

    return df


# -----------------------------------------------------------------------------
# Functional groups
# -----------------------------------------------------------------------------

def load_group_lookup(
    path: Path,
    species_col: str = "sp",
    label_col: str = "label",
) -> Dict[str, str]:
    """Read a species -> functional group label lookup table.

    The file is a CSV with at least a species column and a label column
    (typically also a numeric group id and a group name). Duplicate species
    with conflicting labels raise DataError.
    """
    if not path.exists():
        raise SystemExit(f"Group lookup not found: {path}")
    table = pd.read_csv(path, dtype=str)
    table.columns = table.columns.str.strip()
    for c in (species_col, label_col):
        if c not in table.columns:
            raise DataError(f"{path} must have a '{c}' column. Available columns: {list(table.columns)}")

    table = table.dropna(subset=[species_col, label_col])
    table[species_col] = table[species_col].str.strip()
    table[label_col] = table[label_col].str.strip()
    table = table.drop_duplicates(subset=[species_col, label_col])

    dupes = table[table[species_col].duplicated(keep=False)]
    if not dupes.empty:
        raise DataError(f"Species mapped to more than one group: {sorted(dupes[species_col].unique())}")

    return dict(zip(table[species_col], table[label_col]))


def assign_groups(
    table: pd.DataFrame,
    lookup: Mapping[str, str],
    *,
    catch_all: Optional[str] = None,
    species_col: str = "sp",
    out_col: str = "group",
) -> pd.DataFrame:
    """Return a copy of table with a functional group column.

    Species absent from the lookup get catch_all; with no catch-all they
    keep a missing label, which the neighbor aggregation resolves later.
    """
    out = table.copy()
    out[out_col] = out[species_col].map(lookup)
    if catch_all is not None:
        out[out_col] = out[out_col].fillna(catch_all)
    return out


# -----------------------------------------------------------------------------
# Study region
# -----------------------------------------------------------------------------

def read_region(path: Path, x_col: str = "x", y_col: str = "y") -> BaseGeometry:
    """Read the study-region boundary as a single shapely geometry.

    CSV files are read as an ordered vertex list (x_col, y_col). Anything
    else goes through geopandas and all features are unioned.
    """
    if not path.exists():
        raise SystemExit(f"Region boundary not found: {path}")

    if path.suffix.lower() == ".csv":
        vertices = pd.read_csv(path)
        if x_col not in vertices.columns or y_col not in vertices.columns:
            raise DataError(f"{path} must have '{x_col}' and '{y_col}' vertex columns")
        return region_from_coords(list(zip(vertices[x_col], vertices[y_col])))

    gdf = gpd.read_file(path)
    if gdf.empty:
        raise InvalidGeometryError(f"{path} contains zero features")
    return shapely.union_all(gdf.geometry.values)
