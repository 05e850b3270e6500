#!/usr/bin/env python3
"""crowding.features

Feature engineering CLI for crowding.

This is one of two crowding subsystem CLIs:
- crowding.geo      → plot geometry: core zone, CV blocks
- crowding.features → feature table build and validation (this file)

Design notes:
- Defaults come from the pipeline YAML; flags override single values
- Output format follows the --out suffix (.csv or .parquet)
- Lazy-imports the pipeline so --help stays fast

Examples:
  python -m crowding.features build \
    --census1 data/raw/census/bci_census7.csv \
    --census2 data/raw/census/bci_census8.csv \
    --region data/raw/plot_boundary.csv \
    --groups data/raw/species_groups.csv \
    --out data/processed/tables/growth_features.parquet

  python -m crowding.features validate --table data/processed/tables/growth_features.parquet
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from crowding.config import (
    DEFAULT_FEATURES_CSV,
    DEFAULT_PIPELINE_YAML,
    LABELINGS,
    NEIGHBOR_METHODS,
    PipelineConfig,
    load_pipeline_config,
)
from crowding.exceptions import CrowdingError


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for crowding.features."""
    ap = argparse.ArgumentParser(
        prog="crowding.features",
        description="Growth-competition feature tables for crowding",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m crowding.geo       # Plot geometry
  python -m crowding.features  # Feature table build (this)
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_PIPELINE_YAML,
        help=f"Path to pipeline YAML (default: {DEFAULT_PIPELINE_YAML})",
    )
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("--overwrite", action="store_true", help="Overwrite existing output files")
    ap.add_argument("-v", "--verbose", action="store_true", help="Log pipeline diagnostics")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- build ---
    build = sub.add_parser(
        "build",
        help="Build the wide growth-competition table",
        description="""
Build one row per focal stem with its growth and the summed basal area of
competitors in each functional group.

This command:
1. Joins the two censuses into growth records
2. Maps species to functional groups
3. Flags stems inside the core zone (region eroded by --max-dist)
4. Assigns spatially blocked CV folds
5. Aggregates competitor basal area within --max-dist
6. Pivots to one zero-filled column per group
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    build.add_argument("--census1", required=True, type=Path, help="Earlier census CSV")
    build.add_argument("--census2", required=True, type=Path, help="Later census CSV")
    build.add_argument("--region", required=True, type=Path, help="Plot boundary (vector file or vertex CSV)")
    build.add_argument("--groups", type=Path, default=None, help="Species -> group lookup CSV (sp, label)")
    build.add_argument(
        "--out",
        type=Path,
        default=DEFAULT_FEATURES_CSV,
        help=f"Output table, .csv or .parquet (default: {DEFAULT_FEATURES_CSV})",
    )
    build.add_argument("--neighbors-out", type=Path, default=None, help="Optional long neighbor table output")
    build.add_argument(
        "--blocks-out",
        type=Path,
        default=None,
        help="Optional GeoPackage of the occupied CV blocks, on the grid the folds came from",
    )
    build.add_argument("--max-dist", type=float, default=None, help="Competitor search radius")
    build.add_argument("--block-size", type=float, default=None, help="CV block side length")
    build.add_argument("--k", type=int, default=None, help="Number of folds")
    build.add_argument("--y-offset", type=float, default=None, help="Grid offset, fraction of block size")
    build.add_argument("--labeling", choices=list(LABELINGS), default=None, help="Block-to-fold labeling")
    build.add_argument("--method", choices=list(NEIGHBOR_METHODS), default=None, help="Neighbor search method")

    # --- validate ---
    val = sub.add_parser("validate", help="QA checks on a built feature table")
    val.add_argument("--table", type=Path, default=DEFAULT_FEATURES_CSV, help="Feature table to check")

    return ap


def _load_config(path: Path) -> PipelineConfig:
    if path.exists():
        return load_pipeline_config(path)
    print(f"[CONFIG] {path} not found, using defaults")
    return PipelineConfig()


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_build(args: argparse.Namespace) -> int:
    """Handle the build subcommand."""
    config = _load_config(args.config).with_overrides(
        max_dist=args.max_dist,
        block_size=args.block_size,
        k=args.k,
        y_offset=args.y_offset,
        labeling=args.labeling,
        method=args.method,
    )

    if args.dry_run:
        print("[dry-run] Would build feature table:")
        print(f"  Censuses: {args.census1} -> {args.census2}")
        print(f"  Region: {args.region}")
        print(f"  Groups: {args.groups}")
        roles = ("stem", "x", "y", "dbh", "date", "status")
        print("  Columns: " + " ".join(f"{r}={config.column(r)}" for r in roles))
        print(f"  max_dist={config.max_dist} block_size={config.block_size} k={config.k} y_offset={config.y_offset}")
        print(f"  Output: {args.out}")
        return 0

    if args.out.exists() and not args.overwrite:
        raise SystemExit(f"Output exists: {args.out} (pass --overwrite to replace it)")

    # Lazy import: pipeline pulls in geopandas/shapely
    from crowding.features.build_features import build_feature_table, write_table
    from crowding.ingest.census import load_group_lookup, read_census, read_region

    census1 = read_census(args.census1, config.columns)
    census2 = read_census(args.census2, config.columns)
    region = read_region(args.region)
    lookup = load_group_lookup(args.groups) if args.groups else None

    table = build_feature_table(census1, census2, region, lookup, config)

    write_table(table.wide, args.out)
    if args.neighbors_out:
        write_table(table.neighbors, args.neighbors_out)
    if args.blocks_out:
        blocks = table.grid.to_geodataframe(config.k, config.labeling, occupied=table.growth["block_id"].to_numpy())
        args.blocks_out.parent.mkdir(parents=True, exist_ok=True)
        blocks.to_file(args.blocks_out, layer="cv_blocks", driver="GPKG")
        print(f"[FEATURES] Wrote {len(blocks)} occupied blocks -> {args.blocks_out}")

    for line in table.summary():
        print(f"[FEATURES] {line}")
    print(f"[FEATURES] Wrote -> {args.out}")
    return 0


def _handle_validate(args: argparse.Namespace) -> int:
    """Handle the validate subcommand."""
    from crowding.config import group_labels
    from crowding.features.build_features import read_table
    from crowding.features.validate_features import validate_wide_table

    config = _load_config(args.config)
    wide = read_table(args.table)
    problems = validate_wide_table(wide, group_labels(config), config.k)

    if problems:
        print(f"[INVALID] {args.table}")
        for p in problems:
            print(f"  - {p}")
        return 2
    print(f"[OK] {args.table}: {len(wide)} focal stems")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for crowding.features CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    handlers = {
        "build": _handle_build,
        "validate": _handle_validate,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        return handler(args)
    except CrowdingError as e:
        raise SystemExit(f"[ERROR] {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())
