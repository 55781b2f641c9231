"""
In-memory raster grid shared by every processing step.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
import rasterio.transform
from pyproj import CRS
from rasterio.transform import Affine

from derive_topaz.common.errors import InvalidInput


@dataclass
class Grid:
    """
    A single-band raster: row-major data, nodata sentinel, affine transform and CRS.
    """

    data: np.ndarray
    nodata: Optional[float] = None
    transform: Affine = field(default_factory=Affine.identity)
    crs: Optional[CRS] = None

    def __post_init__(self) -> None:
        self.data = np.asarray(self.data)
        if self.data.ndim != 2:
            raise InvalidInput(f"Grid data must be two-dimensional; got shape {self.data.shape}")
        if self.crs is not None and not isinstance(self.crs, CRS):
            self.crs = CRS.from_user_input(self.crs)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape  # type: ignore[return-value]

    @property
    def rows(self) -> int:
        return self.data.shape[0]

    @property
    def cols(self) -> int:
        return self.data.shape[1]

    @property
    def cell_size_x(self) -> float:
        return abs(self.transform.a)

    @property
    def cell_size_y(self) -> float:
        return abs(self.transform.e)

    @property
    def cell_area(self) -> float:
        return self.cell_size_x * self.cell_size_y

    @property
    def epsg(self) -> Optional[int]:
        if self.crs is None:
            return None
        return self.crs.to_epsg()

    @property
    def is_geographic(self) -> bool:
        return self.crs is not None and self.crs.is_geographic

    def in_bounds(self, row: int, col: int) -> bool:
        return 0 <= row < self.rows and 0 <= col < self.cols

    def valid_mask(self) -> np.ndarray:
        """
        True where the cell holds data (finite and not the nodata sentinel).
        """
        data = self.data
        if np.issubdtype(data.dtype, np.floating):
            valid = np.isfinite(data)
        else:
            valid = np.ones(data.shape, dtype=bool)
        if self.nodata is not None and not (isinstance(self.nodata, float) and math.isnan(self.nodata)):
            valid &= data != self.nodata
        return valid

    def positive_mask(self) -> np.ndarray:
        """
        True where the cell holds data greater than zero (stream and watershed convention).
        """
        valid = self.valid_mask()
        out = np.zeros(self.shape, dtype=bool)
        out[valid] = self.data[valid] > 0
        return out

    def value(self, row: int, col: int) -> float:
        """
        Cell value as float, NaN for nodata.
        """
        val = self.data[row, col]
        if self.nodata is not None and val == self.nodata:
            return float("nan")
        return float(val)

    def xy(self, row: int, col: int) -> Tuple[float, float]:
        x, y = rasterio.transform.xy(self.transform, row, col, offset="center")
        return float(x), float(y)

    def rowcol(self, x: float, y: float) -> Tuple[int, int]:
        row, col = rasterio.transform.rowcol(self.transform, x, y)
        return int(row), int(col)

    def like(self, data: np.ndarray, nodata: Optional[float]) -> "Grid":
        """
        New grid on the same geometry carrying different data.
        """
        return Grid(data=data, nodata=nodata, transform=self.transform, crs=self.crs)


def require_same_geometry(**grids: Optional[Grid]) -> None:
    """
    Verify every supplied grid shares rows, columns, cell size and origin.
    """
    named = [(name, grid) for name, grid in grids.items() if grid is not None]
    if not named:
        raise InvalidInput("No grids supplied.")
    base_name, base = named[0]
    for name, grid in named[1:]:
        if grid.shape != base.shape:
            raise InvalidInput(
                f"Grid '{name}' has shape {grid.shape}; expected {base.shape} to match '{base_name}'."
            )
        if not grid.transform.almost_equals(base.transform):
            raise InvalidInput(
                f"Grid '{name}' transform {tuple(grid.transform)[:6]} does not match '{base_name}' "
                f"{tuple(base.transform)[:6]}."
            )
