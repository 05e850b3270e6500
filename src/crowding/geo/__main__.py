#!/usr/bin/env python3
"""crowding.geo

Geospatial processing CLI for crowding.

This is one of two crowding subsystem CLIs:
- crowding.geo      → plot geometry (this file): core zone, CV blocks
- crowding.features → feature table build and validation

Each subsystem owns its domain and can be invoked independently.

Design notes:
- Uses shared config utilities from crowding.config
- Lazy-imports geopandas-heavy modules to keep CLI startup fast
- All subcommands support --dry-run for safe exploration

Examples:
  # Erode the plot boundary by the competitor radius
  python -m crowding.geo core-zone --region data/raw/plot_boundary.csv --margin 20 \
    --out-gpkg data/interim/vectors/core_zone.gpkg

  # Lay out cross-validation blocks and their fold labels
  python -m crowding.geo blocks --region data/raw/plot_boundary.csv \
    --block-size 100 --k 5 --y-offset 0.5
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from crowding.config import (
    DEFAULT_BLOCKS_GPKG,
    DEFAULT_CORE_GPKG,
    LABELINGS,
    format_bbox,
)
from crowding.exceptions import CrowdingError


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for crowding.geo."""
    ap = argparse.ArgumentParser(
        prog="crowding.geo",
        description="Plot geometry for crowding (core zone, CV blocks)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m crowding.geo       # Plot geometry (this)
  python -m crowding.features  # Feature table build
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without writing files",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )

    sub = ap.add_subparsers(dest="command", required=True)

    # --- core-zone ---
    core = sub.add_parser(
        "core-zone",
        help="Erode the study region by a margin",
        description="""
Buffer the study-region polygon inward (or outward) and write the result.

Stems inside the eroded polygon have their whole competitor neighborhood
inside the surveyed plot and may serve as focal trees.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    core.add_argument("--region", required=True, type=Path, help="Plot boundary (vector file or vertex CSV)")
    core.add_argument("--margin", required=True, type=float, help="Buffer distance in plot units")
    core.add_argument("--direction", choices=["in", "out"], default="in", help="Erode (in) or dilate (out)")
    core.add_argument("--repair", action="store_true", help="Repair a self-intersecting boundary")
    core.add_argument(
        "--out-gpkg",
        type=Path,
        default=DEFAULT_CORE_GPKG,
        help=f"Output GeoPackage (default: {DEFAULT_CORE_GPKG})",
    )

    # --- blocks ---
    blocks = sub.add_parser(
        "blocks",
        help="Lay out spatial CV blocks with fold labels",
        description="""
Lay a grid of square blocks over the region bounds and label every block
touching the region with its fold.

The grid covers the region bounds only, and "sequential" labels treat every
block as occupied. Stems outside the region bounds, or empty blocks, make the
pipeline's grid and labels differ from this layer. For the exact blocks the
folds came from, use:
  python -m crowding.features build ... --blocks-out cv_blocks.gpkg
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    blocks.add_argument("--region", required=True, type=Path, help="Plot boundary (vector file or vertex CSV)")
    blocks.add_argument("--block-size", required=True, type=float, help="Block side length in plot units")
    blocks.add_argument("--k", required=True, type=int, help="Number of folds")
    blocks.add_argument("--y-offset", type=float, default=0.0, help="Vertical grid offset, fraction of block size")
    blocks.add_argument("--labeling", choices=list(LABELINGS), default="diagonal", help="Block-to-fold labeling")
    blocks.add_argument(
        "--out-gpkg",
        type=Path,
        default=DEFAULT_BLOCKS_GPKG,
        help=f"Output GeoPackage (default: {DEFAULT_BLOCKS_GPKG})",
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _refuse_overwrite(path: Path, overwrite: bool) -> None:
    if path.exists() and not overwrite:
        raise SystemExit(f"Output exists: {path} (pass --overwrite to replace it)")


def _handle_core_zone(args: argparse.Namespace) -> int:
    """Handle the core-zone subcommand."""
    if args.dry_run:
        print("[dry-run] Would buffer region:")
        print(f"  Region: {args.region}")
        print(f"  Margin/direction: {args.margin} / {args.direction}")
        print(f"  Output GeoPackage: {args.out_gpkg}")
        return 0

    _refuse_overwrite(args.out_gpkg, args.overwrite)

    # Lazy import: avoids loading geopandas until needed
    import geopandas as gpd

    from crowding.geo.region import buffer_region, region_summary
    from crowding.ingest.census import read_region

    region = read_region(args.region)
    buffered = buffer_region(region, args.margin, args.direction, repair=args.repair)

    for line in region_summary(region, buffered, args.margin):
        print(f"[CORE] {line}")

    if buffered.is_empty:
        print("[CORE] Nothing written: buffered region is empty")
        return 1

    args.out_gpkg.parent.mkdir(parents=True, exist_ok=True)
    out = gpd.GeoDataFrame(
        {"margin": [args.margin], "direction": [args.direction]},
        geometry=[buffered],
    )
    out.to_file(args.out_gpkg, layer="core_zone", driver="GPKG")
    print(f"[CORE] Wrote -> {args.out_gpkg} (bounds={format_bbox(buffered.bounds)})")
    return 0


def _handle_blocks(args: argparse.Namespace) -> int:
    """Handle the blocks subcommand."""
    if args.dry_run:
        print("[dry-run] Would lay out CV blocks:")
        print(f"  Region: {args.region}")
        print(f"  Block size / k / y offset: {args.block_size} / {args.k} / {args.y_offset}")
        print(f"  Output GeoPackage: {args.out_gpkg}")
        return 0

    _refuse_overwrite(args.out_gpkg, args.overwrite)

    from crowding.geo.blocks import build_block_grid
    from crowding.ingest.census import read_region

    region = read_region(args.region)
    grid = build_block_grid(region.bounds, args.block_size, args.y_offset)
    blocks = grid.to_geodataframe(args.k, args.labeling)
    blocks = blocks[blocks.intersects(region)].copy()

    args.out_gpkg.parent.mkdir(parents=True, exist_ok=True)
    blocks.to_file(args.out_gpkg, layer="cv_blocks", driver="GPKG")

    print(f"[BLOCKS] Grid {grid.n_cols} x {grid.n_rows} blocks of {grid.block_size:g}, {len(blocks)} touch the region")
    for fold, n in blocks["fold"].value_counts().sort_index().items():
        print(f"  - fold {fold}: {n} blocks")
    print(f"[BLOCKS] Wrote -> {args.out_gpkg}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for crowding.geo CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "core-zone": _handle_core_zone,
        "blocks": _handle_blocks,
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
