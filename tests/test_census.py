from __future__ import annotations

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import box

from crowding.config import DEFAULT_COLUMNS
from crowding.exceptions import DataError, InvalidGeometryError
from crowding.ingest.census import assign_groups, load_group_lookup, read_census, read_region


def test_read_census_renames_configured_columns(tmp_path):
    path = tmp_path / "census.csv"
    pd.DataFrame(
        {
            "stemID": ["001", "002"],
            "sp": [" sp1", "sp2 "],
            "gx": [1.0, 2.0],
            "gy": [3.0, 4.0],
            "dbh": [10, 20],
            "ExactDate": ["2010-01-01", "2010-06-01"],
        }
    ).to_csv(path, index=False)

    columns = dict(DEFAULT_COLUMNS, date="ExactDate")
    df = read_census(path, columns)

    assert list(df["stemID"]) == ["001", "002"]
    assert list(df["sp"]) == ["sp1", "sp2"]
    assert "date" in df.columns and "ExactDate" not in df.columns
    assert pd.api.types.is_datetime64_any_dtype(df["date"])


def test_read_census_requires_coordinates(tmp_path):
    path = tmp_path / "census.csv"
    pd.DataFrame({"stemID": ["1"], "gx": [1.0], "dbh": [10]}).to_csv(path, index=False)
    with pytest.raises(DataError, match="gy"):
        read_census(path)


def test_read_census_missing_file(tmp_path):
    with pytest.raises(SystemExit):
        read_census(tmp_path / "nope.csv")


def test_group_lookup_and_assignment(tmp_path):
    path = tmp_path / "groups.csv"
    pd.DataFrame(
        {"sp": ["sp1", "sp2", "sp2"], "group_id": ["1", "2", "2"], "label": ["a", "b", "b"]}
    ).to_csv(path, index=False)

    lookup = load_group_lookup(path)
    assert lookup == {"sp1": "a", "sp2": "b"}

    table = pd.DataFrame({"sp": ["sp1", "sp2", "sp9"]})
    out = assign_groups(table, lookup, catch_all="other")
    assert list(out["group"]) == ["a", "b", "other"]
    assert "group" not in table.columns

    no_catch_all = assign_groups(table, lookup)
    assert no_catch_all["group"].isna().sum() == 1


def test_group_lookup_rejects_conflicting_labels(tmp_path):
    path = tmp_path / "groups.csv"
    pd.DataFrame({"sp": ["sp1", "sp1"], "label": ["a", "b"]}).to_csv(path, index=False)
    with pytest.raises(DataError, match="sp1"):
        load_group_lookup(path)


def test_read_region_from_vertex_csv(tmp_path):
    path = tmp_path / "plot.csv"
    pd.DataFrame({"x": [0, 50, 50, 0], "y": [0, 0, 20, 20]}).to_csv(path, index=False)
    region = read_region(path)
    assert region.area == pytest.approx(1000.0)


def test_read_region_too_few_vertices(tmp_path):
    path = tmp_path / "plot.csv"
    pd.DataFrame({"x": [0, 1], "y": [0, 1]}).to_csv(path, index=False)
    with pytest.raises(InvalidGeometryError):
        read_region(path)


def test_read_region_unions_vector_features(tmp_path):
    path = tmp_path / "plot.gpkg"
    gpd.GeoDataFrame(geometry=[box(0, 0, 10, 10), box(10, 0, 20, 10)]).to_file(path, driver="GPKG")
    region = read_region(path)
    assert region.area == pytest.approx(200.0)
    assert region.bounds == pytest.approx((0.0, 0.0, 20.0, 10.0))
