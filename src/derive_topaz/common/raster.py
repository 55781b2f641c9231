"""
Raster read/write helpers bridging GeoTIFF files and in-memory grids.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import rasterio

from derive_topaz.common.errors import InvalidInput
from derive_topaz.common.grid import Grid


def read_grid(path: Path, band: int = 1) -> Grid:
    """
    Read one band of a raster into a Grid.
    """
    path = Path(path)
    if not path.exists():
        raise InvalidInput(f"Raster not found: {path}")
    with rasterio.open(path) as src:
        data = src.read(band)
        return Grid(data=data, nodata=src.nodata, transform=src.transform, crs=src.crs)


def write_grid(path: Path, grid: Grid, dtype: str | None = None) -> Path:
    """
    Write a Grid as a single-band GeoTIFF.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    array = grid.data if dtype is None else grid.data.astype(dtype)
    meta = {
        "driver": "GTiff",
        "height": array.shape[0],
        "width": array.shape[1],
        "count": 1,
        "dtype": str(array.dtype),
        "transform": grid.transform,
        "nodata": grid.nodata,
    }
    if grid.crs is not None:
        meta["crs"] = grid.crs.to_wkt()
    with rasterio.open(path, "w", **meta) as dst:
        dst.write(np.asarray(array), 1)
    return path
