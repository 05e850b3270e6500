from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
import pytest
import shapely

from crowding.exceptions import DataError, FoldCountWarning, InvalidParameterError
from crowding.geo.blocks import (
    assign_folds,
    build_block_grid,
    fold_block_table,
    grid_for_points,
    label_blocks,
)


def _centers():
    return pd.DataFrame({"gx": [2.5, 7.5, 2.5, 7.5], "gy": [2.5, 2.5, 7.5, 7.5]})


def test_four_folds_over_two_by_two_grid_are_distinct(square_region):
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        folds = assign_folds(_centers(), square_region, block_size=5.0, k=4)
    assert sorted(folds.tolist()) == [1, 2, 3, 4]


def test_assignment_is_deterministic(random_stems, plot_region):
    a = assign_folds(random_stems, plot_region, block_size=20.0, k=5, y_offset=0.3)
    b = assign_folds(random_stems, plot_region, block_size=20.0, k=5, y_offset=0.3)
    np.testing.assert_array_equal(a, b)


def test_folds_are_in_range(random_stems, plot_region):
    for labeling in ("diagonal", "sequential"):
        folds = assign_folds(random_stems, plot_region, 15.0, 6, labeling=labeling)
        assert folds.min() >= 1
        assert folds.max() <= 6


def test_every_occupied_block_has_one_fold(random_stems, plot_region):
    grid = grid_for_points(random_stems["gx"], random_stems["gy"], plot_region, 20.0)
    blocks, folds = label_blocks(random_stems, grid, k=4)
    per_block = pd.DataFrame({"block": blocks, "fold": folds}).groupby("block")["fold"].nunique()
    assert (per_block == 1).all()


def test_blocks_partition_the_grid():
    grid = build_block_grid((0.0, 0.0, 100.0, 60.0), 20.0)
    blocks = grid.to_geodataframe(k=3)
    assert len(blocks) == grid.n_blocks == 5 * 3
    assert blocks["block_id"].is_unique
    assert blocks.geometry.area.sum() == pytest.approx(100.0 * 60.0)
    assert shapely.union_all(blocks.geometry.values).area == pytest.approx(100.0 * 60.0)


def test_half_open_blocks_are_left_bottom_inclusive():
    grid = build_block_grid((0.0, 0.0, 10.0, 10.0), 5.0)
    rows, cols = grid.locate(np.array([0.0, 4.999, 5.0, 10.0]), np.array([0.0, 0.0, 5.0, 10.0]))
    assert cols.tolist() == [0, 0, 1, 1]
    assert rows.tolist() == [0, 0, 1, 1]


def test_y_offset_shifts_grid_down():
    grid = build_block_grid((0.0, 0.0, 10.0, 10.0), 5.0, y_offset=0.5)
    assert grid.y0 == -2.5
    assert grid.n_rows == 3
    assert grid.n_cols == 2


def test_diagonal_labels_separate_king_neighbours():
    grid = build_block_grid((0.0, 0.0, 60.0, 50.0), 10.0)
    rows, cols = np.divmod(np.arange(grid.n_blocks), grid.n_cols)
    labels = grid.fold_of(rows, cols, k=4).reshape(grid.n_rows, grid.n_cols)
    for r in range(grid.n_rows):
        for c in range(grid.n_cols):
            for dr in (-1, 0, 1):
                for dc in (-1, 0, 1):
                    rr, cc = r + dr, c + dc
                    if (dr, dc) == (0, 0) or not (0 <= rr < grid.n_rows and 0 <= cc < grid.n_cols):
                        continue
                    assert labels[r, c] != labels[rr, cc]


def test_two_folds_form_a_checkerboard():
    grid = build_block_grid((0.0, 0.0, 40.0, 40.0), 10.0)
    rows, cols = np.divmod(np.arange(grid.n_blocks), grid.n_cols)
    labels = grid.fold_of(rows, cols, k=2).reshape(grid.n_rows, grid.n_cols)
    assert (labels[:, 1:] != labels[:, :-1]).all()
    assert (labels[1:, :] != labels[:-1, :]).all()


def test_sequential_labels_deal_occupied_blocks_round_robin():
    # One stem per block down the first column: block ids 0, 4, 8, 12
    pts = pd.DataFrame({"gx": [5.0, 5.0, 5.0, 5.0], "gy": [5.0, 15.0, 25.0, 35.0]})
    folds = assign_folds(pts, [0, 0, 40, 40], block_size=10.0, k=4, labeling="sequential")
    assert folds.tolist() == [1, 2, 3, 4]


def test_sequential_fold_counts_differ_by_at_most_one(random_stems, plot_region):
    sparse = random_stems[random_stems["gx"] < 30.0]
    grid = grid_for_points(sparse["gx"], sparse["gy"], plot_region, 10.0)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", FoldCountWarning)
        blocks, folds = label_blocks(sparse, grid, k=4, labeling="sequential")
    per_fold = pd.DataFrame({"block": blocks, "fold": folds}).drop_duplicates()["fold"].value_counts()
    assert per_fold.max() - per_fold.min() <= 1


def test_sequential_rejects_unlisted_blocks():
    grid = build_block_grid((0.0, 0.0, 40.0, 40.0), 10.0)
    with pytest.raises(InvalidParameterError):
        grid.fold_of(np.array([0, 1]), np.array([0, 0]), k=2, labeling="sequential", occupied=np.array([0]))


def test_label_blocks_uses_one_grid_for_blocks_and_folds(random_stems, plot_region):
    grid = grid_for_points(random_stems["gx"], random_stems["gy"], plot_region, 20.0, 0.5)
    blocks, folds = label_blocks(random_stems, grid, k=5)
    rows, cols = grid.locate(random_stems["gx"], random_stems["gy"])
    np.testing.assert_array_equal(blocks, grid.block_id(rows, cols))
    np.testing.assert_array_equal(folds, assign_folds(random_stems, plot_region, 20.0, 5, 0.5))


def test_occupied_block_layer_matches_stem_folds(random_stems, plot_region):
    sparse = random_stems[random_stems["gy"] > 60.0]
    grid = grid_for_points(sparse["gx"], sparse["gy"], plot_region, 20.0)
    blocks, folds = label_blocks(sparse, grid, k=3, labeling="sequential")
    layer = grid.to_geodataframe(3, "sequential", occupied=blocks).set_index("block_id")["fold"]
    assert len(layer) == len(np.unique(blocks))
    np.testing.assert_array_equal(layer.loc[blocks].to_numpy(), folds)


def test_more_folds_than_blocks_warns_but_assigns(square_region):
    with pytest.warns(FoldCountWarning):
        folds = assign_folds(_centers(), square_region, block_size=5.0, k=6)
    assert len(folds) == 4
    assert ((folds >= 1) & (folds <= 6)).all()


def test_points_outside_region_bounds_are_covered(square_region):
    pts = pd.DataFrame({"gx": [2.0, 14.0], "gy": [2.0, -3.0]})
    folds = assign_folds(pts, square_region, block_size=5.0, k=2)
    assert set(folds.tolist()) <= {1, 2}


def test_bbox_list_accepted_as_region():
    folds = assign_folds(_centers(), [0, 0, 10, 10], block_size=5.0, k=4)
    assert sorted(folds.tolist()) == [1, 2, 3, 4]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"block_size": 0.0, "k": 2},
        {"block_size": 5.0, "k": 0},
        {"block_size": 5.0, "k": 2, "y_offset": 1.0},
        {"block_size": 5.0, "k": 2, "labeling": "random"},
    ],
)
def test_invalid_parameters_rejected(square_region, kwargs):
    with pytest.raises(InvalidParameterError):
        assign_folds(_centers(), square_region, **kwargs)


def test_missing_coordinates_rejected(square_region):
    pts = pd.DataFrame({"gx": [1.0, np.nan], "gy": [1.0, 1.0]})
    with pytest.raises(DataError):
        assign_folds(pts, square_region, 5.0, 2)


def test_no_points_returns_empty(square_region):
    folds = assign_folds(pd.DataFrame({"gx": [], "gy": []}), square_region, 5.0, 2)
    assert folds.shape == (0,)


def test_fold_block_table_counts():
    table = fold_block_table(np.array([0, 0, 1, 2]), np.array([1, 1, 2, 1]))
    row = table.set_index("fold").loc[1]
    assert row["n_blocks"] == 2
    assert row["n_stems"] == 3


def test_fold_block_table_lists_empty_folds():
    table = fold_block_table(np.array([0, 1]), np.array([1, 3]), k=4)
    assert table["fold"].tolist() == [1, 2, 3, 4]
    assert table["n_stems"].tolist() == [1, 0, 1, 0]
