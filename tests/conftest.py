"""
Shared grid builders for the derive_topaz tests.

Pointer grids are written as rows of compass letters so the flow pattern can be read off the test source.
"""

import numpy as np
import pytest
from rasterio.transform import from_origin

from derive_topaz.common.grid import Grid
from derive_topaz.process.d8 import FlowDirections, encode

LETTERS = {
    "N": (-1, 0),
    "NE": (-1, 1),
    "E": (0, 1),
    "SE": (1, 1),
    "S": (1, 0),
    "SW": (1, -1),
    "W": (0, -1),
    "NW": (-1, -1),
}

CELL_SIZE = 10.0
PROJECTED_CRS = "EPSG:32633"


def make_grid(data, cell_size=CELL_SIZE, crs=PROJECTED_CRS, nodata=None, origin=(500000.0, 4000000.0)):
    transform = from_origin(origin[0], origin[1], cell_size, cell_size)
    return Grid(data=np.asarray(data), nodata=nodata, transform=transform, crs=crs)


def pointer_grid(rows, scheme="native", **kwargs):
    data = np.array(
        [[encode(LETTERS[letter], scheme) for letter in row.split()] for row in rows],
        dtype=np.int16,
    )
    return make_grid(data, **kwargs)


def stream_array(shape, cells):
    streams = np.zeros(shape, dtype=bool)
    for cell in cells:
        streams[cell] = True
    return streams


# Two headwater channels meeting at (3, 3) and draining south off the raster.
Y_POINTERS = [
    "SE S  SW S SE S  SW",
    "E  SE S  S S  SW W",
    "E  E  SE S SW W  W",
    "E  E  E  S W  W  W",
    "E  E  E  S W  W  W",
    "E  E  E  S W  W  W",
    "E  E  E  S W  W  W",
]
Y_STREAMS = [(1, 1), (2, 2), (3, 3), (4, 3), (5, 3), (6, 3), (1, 5), (2, 4)]
Y_LABELS = [
    [31, 31, 31, 22, 41, 41, 41],
    [31, 34, 32, 22, 43, 44, 41],
    [33, 33, 34, 22, 44, 42, 42],
    [23, 23, 23, 24, 22, 22, 22],
    [23, 23, 23, 24, 22, 22, 22],
    [23, 23, 23, 24, 22, 22, 22],
    [23, 23, 23, 24, 22, 22, 22],
]


@pytest.fixture
def y_pointer():
    return pointer_grid(Y_POINTERS)


@pytest.fixture
def y_flow(y_pointer):
    return FlowDirections(y_pointer, "native")


@pytest.fixture
def y_streams():
    return stream_array((7, 7), Y_STREAMS)


@pytest.fixture
def y_stream_grid(y_streams):
    return make_grid(y_streams.astype(np.uint8), nodata=255)


@pytest.fixture
def y_watershed():
    return make_grid(np.ones((7, 7), dtype=np.uint8), nodata=0)


@pytest.fixture
def y_dem():
    rows, cols = np.indices((7, 7))
    return make_grid((100.0 - rows).astype(np.float32), nodata=-9999.0)


@pytest.fixture
def square_basin():
    """
    9x9 raster draining south, a 7x7 watershed inset by one cell and a channel down column 4.
    """
    pointer = pointer_grid([" ".join(["S"] * 9)] * 9)
    watershed = np.zeros((9, 9), dtype=np.uint8)
    watershed[1:8, 1:8] = 1
    streams = stream_array((9, 9), [(r, 4) for r in range(1, 9)])
    return pointer, make_grid(watershed, nodata=255), streams
