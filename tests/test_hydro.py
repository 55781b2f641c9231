import geopandas as gpd
import numpy as np
import pytest
import rasterio

from derive_topaz.common.errors import InvalidInput, InvalidPointer
from derive_topaz.common.raster import write_grid
from derive_topaz.process.hillslopes import LABEL_NODATA
from derive_topaz.process.hydro import derive_topaz, write_topaz_outputs
from derive_topaz.process.vectorize import links_to_lines, outlet_to_point

from conftest import Y_LABELS, make_grid


def test_derive_topaz_in_memory(y_pointer, y_stream_grid, y_watershed, y_dem):
    result = derive_topaz(y_pointer, y_stream_grid, watershed=y_watershed, dem=y_dem)
    assert result["scheme"] == "native"
    assert result["outlet"].cell == (6, 3)
    assert [link.topaz_id for link in result["tree"]] == [24, 44, 34]
    np.testing.assert_array_equal(result["labels"], np.array(Y_LABELS))
    assert result["tree"][0].areaup == pytest.approx(4900.0)


def test_derive_topaz_is_deterministic(y_pointer, y_stream_grid, y_watershed):
    first = derive_topaz(y_pointer, y_stream_grid, watershed=y_watershed)
    second = derive_topaz(y_pointer, y_stream_grid, watershed=y_watershed)
    np.testing.assert_array_equal(first["labels"], second["labels"])
    assert [link.path for link in first["tree"]] == [link.path for link in second["tree"]]


def test_find_outlet_only(y_pointer, y_stream_grid, y_watershed):
    result = derive_topaz(y_pointer, y_stream_grid, watershed=y_watershed, find_outlet_only=True)
    assert "tree" not in result
    assert result["outlet"].cell == (6, 3)


def test_labels_follow_contributing_area(y_pointer, y_stream_grid):
    # outlet requested at the top of the west channel: only its headwater is labelled
    result = derive_topaz(y_pointer, y_stream_grid, outlet_row_col=(1, 1), pointer_scheme="native")
    labels = result["labels"]
    assert result["outlet"].cell == (2, 2)
    assert int((labels != LABEL_NODATA).sum()) == int(result["mask"].sum())
    assert labels[2, 2] == 24


def test_mismatched_geometry_is_rejected(y_pointer, y_stream_grid):
    small = make_grid(np.ones((5, 5), dtype=np.uint8), nodata=0)
    with pytest.raises(InvalidInput, match="shape"):
        derive_topaz(y_pointer, y_stream_grid, watershed=small)


def test_empty_streams_are_rejected(y_pointer, y_watershed):
    streams = make_grid(np.zeros((7, 7), dtype=np.uint8))
    with pytest.raises(InvalidInput, match="no stream cells"):
        derive_topaz(y_pointer, streams, watershed=y_watershed)


def test_vector_features(y_pointer, y_stream_grid, y_watershed):
    result = derive_topaz(y_pointer, y_stream_grid, watershed=y_watershed)
    lines = links_to_lines(result["tree"], y_pointer)
    assert len(lines) == 3
    assert lines.crs.to_epsg() == 32633
    assert lines.geometry.iloc[0].length == pytest.approx(30.0)
    point = outlet_to_point(result["outlet"], y_pointer)
    assert point.geometry.iloc[0].x == pytest.approx(y_pointer.xy(6, 3)[0])
    assert point["column"].iloc[0] == 3


def test_outputs_written_from_raster_paths(tmp_path, y_pointer, y_stream_grid, y_watershed, y_dem):
    inputs = tmp_path / "inputs"
    paths = {
        name: write_grid(inputs / f"{name}.tif", grid)
        for name, grid in {"d8": y_pointer, "streams": y_stream_grid, "watershed": y_watershed, "dem": y_dem}.items()
    }
    result = derive_topaz(paths["d8"], paths["streams"], watershed=paths["watershed"], dem=paths["dem"])
    outputs = write_topaz_outputs(result, tmp_path / "out")

    assert set(outputs) == {"outlet", "subwta", "netw", "channels"}
    with rasterio.open(outputs["subwta"]) as src:
        assert src.dtypes[0] == "int32"
        assert src.nodata == LABEL_NODATA
        np.testing.assert_array_equal(src.read(1), np.array(Y_LABELS))
    channels = gpd.read_file(outputs["channels"], layer="channels")
    assert sorted(channels["topaz_id"]) == [24, 34, 44]
    outlet = gpd.read_file(outputs["outlet"])
    assert outlet["row"].iloc[0] == 6


def test_watershed_cells_not_draining_to_outlet_stay_nodata(y_pointer, y_stream_grid, y_watershed, caplog):
    result = derive_topaz(y_pointer, y_stream_grid, watershed=y_watershed, outlet_row_col=(1, 1))
    labels = result["labels"]
    assert result["outlet"].cell == (2, 2)
    assert int((labels != LABEL_NODATA).sum()) == 9
    assert labels[6, 3] == LABEL_NODATA
    assert "40 watershed cells do not drain to the outlet" in caplog.text


def test_invalid_pointer_on_reached_outlet_is_fatal(y_pointer, y_stream_grid):
    # the trace steps onto (4, 3) from the junction and accepts it before reading its pointer
    y_pointer.data[4, 3] = 0
    with pytest.raises(InvalidPointer, match="row 4, col 3"):
        derive_topaz(y_pointer, y_stream_grid, outlet_row_col=(3, 3), pointer_scheme="native")
