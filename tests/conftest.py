"""
Shared pytest fixtures for crowding tests.

Ensures src/ is importable without installing the package, and provides
small census tables and plot geometries reused across test modules.
"""
from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from crowding.config import PipelineConfig  # noqa: E402


# =============================================================================
# Geometry
# =============================================================================

@pytest.fixture
def square_region():
    """A 10 x 10 plot with its lower-left corner at the origin."""
    return box(0.0, 0.0, 10.0, 10.0)


@pytest.fixture
def plot_region():
    """A 100 x 100 plot used by the pipeline tests."""
    return box(0.0, 0.0, 100.0, 100.0)


# =============================================================================
# Stem tables
# =============================================================================

@pytest.fixture
def random_stems():
    """300 stems scattered over a 100 x 100 plot, fixed seed."""
    rng = np.random.default_rng(42)
    n = 300
    return pd.DataFrame(
        {
            "stemID": [f"S{i:04d}" for i in range(n)],
            "gx": rng.uniform(0, 100, n),
            "gy": rng.uniform(0, 100, n),
            "dbh": rng.uniform(10, 400, n),
            "group": rng.choice(["a", "b", "c"], n),
        }
    )


def _lattice(spacing: float = 10.0, extent: float = 100.0) -> pd.DataFrame:
    coords = np.arange(0.0, extent + spacing / 2, spacing)
    gx, gy = np.meshgrid(coords, coords)
    n = gx.size
    species = np.array(["sp1", "sp2", "sp3"])[np.arange(n) % 3]
    return pd.DataFrame(
        {
            "stemID": [f"T{i:03d}" for i in range(n)],
            "treeID": [f"T{i:03d}" for i in range(n)],
            "sp": species,
            "gx": gx.ravel(),
            "gy": gy.ravel(),
        }
    )


@pytest.fixture
def lattice_censuses():
    """Two censuses of an 11 x 11 lattice (10 m spacing), every stem +2.0 dbh.

    Stem T000 is dead in the second census.
    """
    base = _lattice()
    c1 = base.assign(dbh=10.0, date=pd.Timestamp("2010-06-01"), status="A")
    c2 = base.assign(dbh=12.0, date=pd.Timestamp("2015-06-01"), status="A")
    c2.loc[c2["stemID"] == "T000", "status"] = "D"
    return c1, c2


@pytest.fixture
def group_lookup():
    """sp3 is deliberately missing: it falls into the catch-all group."""
    return {"sp1": "a", "sp2": "b"}


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        max_dist=15.0,
        block_size=50.0,
        k=4,
        group_universe=("a", "b", "c", "other"),
        catch_all="other",
    )
