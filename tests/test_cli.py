import json
import logging

import pytest

from derive_topaz.cli import main, parse_args
from derive_topaz.common.raster import write_grid


@pytest.fixture
def y_rasters(tmp_path, y_pointer, y_stream_grid, y_watershed, y_dem):
    inputs = tmp_path / "inputs"
    return {
        "d8": write_grid(inputs / "d8.tif", y_pointer),
        "streams": write_grid(inputs / "streams.tif", y_stream_grid),
        "watershed": write_grid(inputs / "watershed.tif", y_watershed),
        "dem": write_grid(inputs / "dem.tif", y_dem),
    }


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    for handler in list(logging.root.handlers):
        handler.close()
        logging.root.removeHandler(handler)


def test_parse_args_defaults(tmp_path):
    args = parse_args(["-d8", "a.tif", "-streams", "b.tif", "-output", str(tmp_path)])
    assert args.pointer_scheme == "auto"
    assert args.outlet_rule == "junction"
    assert args.max_candidates == 512
    assert args.outlet_row_col is None
    assert not args.find_outlet_only


def test_parse_outlet_pairs(tmp_path):
    args = parse_args(["-d8", "a.tif", "-streams", "b.tif", "-output", str(tmp_path), "--outlet-row-col", "3, 4"])
    assert args.outlet_row_col == (3, 4)
    args = parse_args(["-d8", "a.tif", "-streams", "b.tif", "-output", str(tmp_path), "--outlet-lng-lat", "10.5,49.25"])
    assert args.outlet_lng_lat == (10.5, 49.25)
    with pytest.raises(SystemExit):
        parse_args(["-d8", "a.tif", "-streams", "b.tif", "-output", str(tmp_path), "--outlet-row-col", "3"])


def test_full_run(tmp_path, y_rasters):
    out = tmp_path / "out"
    code = main(
        [
            "-d8", str(y_rasters["d8"]),
            "-streams", str(y_rasters["streams"]),
            "-output", str(out),
            "--watershed", str(y_rasters["watershed"]),
            "--dem", str(y_rasters["dem"]),
        ]
    )
    assert code == 0
    for name in ("outlet.geojson", "subwta.tif", "netw.tsv", "channels.gpkg", "run_metadata.json", "processing.log"):
        assert (out / name).exists(), name

    metadata = json.loads((out / "run_metadata.json").read_text())
    assert metadata["outlet"]["row"] == 6
    assert metadata["network"]["links"] == 3
    assert metadata["network"]["max_topaz_id"] == 44
    assert metadata["parameters"]["outlet_rule"] == "junction"


def test_find_outlet_only_run(tmp_path, y_rasters):
    out = tmp_path / "out"
    code = main(
        [
            "-d8", str(y_rasters["d8"]),
            "-streams", str(y_rasters["streams"]),
            "-output", str(out),
            "--watershed", str(y_rasters["watershed"]),
            "--find-outlet-only",
        ]
    )
    assert code == 0
    assert (out / "outlet.geojson").exists()
    assert not (out / "subwta.tif").exists()
    assert json.loads((out / "run_metadata.json").read_text())["network"] is None


def test_invalid_input_exits_with_status_2(tmp_path, y_rasters):
    out = tmp_path / "out"
    code = main(
        [
            "-d8", str(y_rasters["d8"]),
            "-streams", str(y_rasters["streams"]),
            "-output", str(out),
            "--outlet-lng-lat", "10.0,50.0",
        ]
    )
    assert code == 2
    assert "Provide a row/col instead" in (out / "processing.log").read_text()
