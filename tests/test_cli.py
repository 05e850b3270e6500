from __future__ import annotations

from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest

from crowding.features.__main__ import main as features_main
from crowding.geo.__main__ import main as geo_main


@pytest.fixture
def inputs(tmp_path, lattice_censuses):
    c1, c2 = lattice_censuses
    c1.to_csv(tmp_path / "census1.csv", index=False)
    c2.to_csv(tmp_path / "census2.csv", index=False)
    pd.DataFrame({"x": [0, 100, 100, 0], "y": [0, 0, 100, 100]}).to_csv(tmp_path / "plot.csv", index=False)
    pd.DataFrame(
        {"sp": ["sp1", "sp2"], "group_id": [1, 2], "group_name": ["Alpha", "Beta"], "label": ["a", "b"]}
    ).to_csv(tmp_path / "groups.csv", index=False)
    (tmp_path / "pipeline.yaml").write_text(
        "neighborhood: {max_dist: 15}\n"
        "folds: {block_size: 50, k: 4}\n"
        "groups: {universe: [a, b, c, other], catch_all: other}\n"
    )
    return tmp_path


def test_geo_dry_runs(capsys):
    assert geo_main(["--dry-run", "core-zone", "--region", "plot.csv", "--margin", "20"]) == 0
    assert geo_main(["--dry-run", "blocks", "--region", "plot.csv", "--block-size", "50", "--k", "4"]) == 0
    out = capsys.readouterr().out
    assert "[dry-run] Would buffer region" in out
    assert "[dry-run] Would lay out CV blocks" in out


def test_features_dry_run(inputs, capsys):
    rc = features_main(
        [
            "--config", str(inputs / "pipeline.yaml"),
            "--dry-run",
            "build",
            "--census1", str(inputs / "census1.csv"),
            "--census2", str(inputs / "census2.csv"),
            "--region", str(inputs / "plot.csv"),
            "--k", "3",
        ]
    )
    assert rc == 0
    out = capsys.readouterr().out
    assert "k=3" in out
    assert "x=gx" in out and "date=date" in out
    assert not (inputs / "growth_features.csv").exists()


def test_build_then_validate(inputs, capsys):
    out_path = inputs / "features.csv"
    rc = features_main(
        [
            "--config", str(inputs / "pipeline.yaml"),
            "build",
            "--census1", str(inputs / "census1.csv"),
            "--census2", str(inputs / "census2.csv"),
            "--region", str(inputs / "plot.csv"),
            "--groups", str(inputs / "groups.csv"),
            "--out", str(out_path),
        ]
    )
    assert rc == 0
    wide = pd.read_csv(out_path)
    assert len(wide) == 49
    assert list(wide.columns[-4:])[-1] == "other"
    np.testing.assert_allclose(wide["growth"], 2.0)
    assert "[FEATURES] Wrote" in capsys.readouterr().out

    rc = features_main(["--config", str(inputs / "pipeline.yaml"), "validate", "--table", str(out_path)])
    assert rc == 0
    assert "[OK]" in capsys.readouterr().out


def test_build_refuses_to_overwrite(inputs):
    out_path = inputs / "features.csv"
    out_path.write_text("already here\n")
    with pytest.raises(SystemExit):
        features_main(
            [
                "--config", str(inputs / "pipeline.yaml"),
                "build",
                "--census1", str(inputs / "census1.csv"),
                "--census2", str(inputs / "census2.csv"),
                "--region", str(inputs / "plot.csv"),
                "--out", str(out_path),
            ]
        )


def test_empty_core_zone_exits_with_message(inputs):
    with pytest.raises(SystemExit, match="core zone is empty"):
        features_main(
            [
                "--config", str(inputs / "pipeline.yaml"),
                "build",
                "--census1", str(inputs / "census1.csv"),
                "--census2", str(inputs / "census2.csv"),
                "--region", str(inputs / "plot.csv"),
                "--groups", str(inputs / "groups.csv"),
                "--out", str(inputs / "never.csv"),
                "--max-dist", "60",
            ]
        )


def test_blocks_out_matches_stem_folds(inputs, capsys):
    out_path = inputs / "features.csv"
    blocks_path = inputs / "cv_blocks.gpkg"
    rc = features_main(
        [
            "--config", str(inputs / "pipeline.yaml"),
            "build",
            "--census1", str(inputs / "census1.csv"),
            "--census2", str(inputs / "census2.csv"),
            "--region", str(inputs / "plot.csv"),
            "--groups", str(inputs / "groups.csv"),
            "--out", str(out_path),
            "--blocks-out", str(blocks_path),
            "--labeling", "sequential",
        ]
    )
    assert rc == 0
    assert "4 occupied blocks" in capsys.readouterr().out

    blocks = gpd.read_file(blocks_path, layer="cv_blocks")
    assert sorted(blocks["fold"].tolist()) == [1, 2, 3, 4]

    # 50 m blocks over a 100 m plot; the outer edge closes into the last block
    fold_at = {(int(r), int(c)): int(f) for r, c, f in zip(blocks["row"], blocks["col"], blocks["fold"])}
    wide = pd.read_csv(out_path)
    rows = np.minimum(wide["gy"] // 50, 1).astype(int)
    cols = np.minimum(wide["gx"] // 50, 1).astype(int)
    expected = [fold_at[(r, c)] for r, c in zip(rows, cols)]
    assert wide["fold"].tolist() == expected
