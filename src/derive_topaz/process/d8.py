"""
D8 pointer decoding and loop-guarded downstream tracing.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np

from derive_topaz.common.errors import InvalidInput, InvalidPointer, LoopDetected, StepLimitExceeded
from derive_topaz.common.grid import Grid

LOG = logging.getLogger(__name__)

Cell = Tuple[int, int]

# 8-neighborhood offsets (row, col), clockwise from north
NEIGHBORS: list[tuple[int, int]] = [
    (-1, 0),
    (-1, 1),
    (0, 1),
    (1, 1),
    (1, 0),
    (1, -1),
    (0, -1),
    (-1, -1),
]

# Whitebox-style pointers: 1=NE, 2=E, 4=SE, 8=S, 16=SW, 32=W, 64=NW, 128=N.
NATIVE_CODES: Dict[int, Tuple[int, int]] = {
    1: (-1, 1),
    2: (0, 1),
    4: (1, 1),
    8: (1, 0),
    16: (1, -1),
    32: (0, -1),
    64: (-1, -1),
    128: (-1, 0),
}

# ESRI flow direction: 1=E, 2=SE, 4=S, 8=SW, 16=W, 32=NW, 64=N, 128=NE.
ESRI_CODES: Dict[int, Tuple[int, int]] = {
    1: (0, 1),
    2: (1, 1),
    4: (1, 0),
    8: (1, -1),
    16: (0, -1),
    32: (-1, -1),
    64: (-1, 0),
    128: (-1, 1),
}

SCHEMES: Dict[str, Dict[int, Tuple[int, int]]] = {"native": NATIVE_CODES, "esri": ESRI_CODES}


def _codes(scheme: str) -> Dict[int, Tuple[int, int]]:
    try:
        return SCHEMES[scheme]
    except KeyError:
        raise InvalidInput(f"Unknown D8 pointer scheme '{scheme}'. Use one of {sorted(SCHEMES)}.") from None


def decode(value: float, scheme: str = "native") -> Tuple[int, int]:
    """
    Decode a pointer value into a (drow, dcol) step.
    """
    codes = _codes(scheme)
    if value is None or not np.isfinite(value):
        raise InvalidPointer(f"Pointer value {value} has no flow direction.", value=value)
    offset = codes.get(int(round(float(value))))
    if offset is None:
        raise InvalidPointer(f"Pointer value {value} is not a valid {scheme} D8 code.", value=value)
    return offset


def encode(offset: Tuple[int, int], scheme: str = "native") -> int:
    for code, step in _codes(scheme).items():
        if step == tuple(offset):
            return code
    raise InvalidInput(f"Offset {offset} is not a D8 step.")


def _decode_arrays(pointer: Grid, scheme: str) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    codes = _codes(scheme)
    valid_data = pointer.valid_mask()
    rounded = np.zeros(pointer.shape, dtype=np.int64)
    rounded[valid_data] = np.rint(pointer.data[valid_data]).astype(np.int64)

    drow = np.zeros(pointer.shape, dtype=np.int8)
    dcol = np.zeros(pointer.shape, dtype=np.int8)
    valid = np.zeros(pointer.shape, dtype=bool)
    for code, (dr, dc) in codes.items():
        match = valid_data & (rounded == code)
        if not np.any(match):
            continue
        drow[match] = dr
        dcol[match] = dc
        valid |= match
    return drow, dcol, valid


def detect_scheme(pointer: Grid, dem: Grid | None = None) -> str:
    """
    Pick the pointer scheme whose steps run downslope on the DEM most often.

    Both schemes use the same code set, so without a DEM the native scheme is assumed.
    """
    if dem is None:
        LOG.warning("No DEM supplied for pointer scheme detection; assuming native pointers.")
        return "native"
    if dem.shape != pointer.shape:
        raise InvalidInput("DEM and pointer grids must share a shape for scheme detection.")

    rows, cols = pointer.shape
    elev = dem.data.astype("float64")
    dem_valid = dem.valid_mask()
    scores: Dict[str, int] = {}
    for scheme in ("native", "esri"):
        drow, dcol, valid = _decode_arrays(pointer, scheme)
        rr, cc = np.nonzero(valid & dem_valid)
        tr = rr + drow[rr, cc]
        tc = cc + dcol[rr, cc]
        inside = (tr >= 0) & (tr < rows) & (tc >= 0) & (tc < cols)
        rr, cc, tr, tc = rr[inside], cc[inside], tr[inside], tc[inside]
        keep = dem_valid[tr, tc]
        scores[scheme] = int(np.count_nonzero(elev[tr[keep], tc[keep]] <= elev[rr[keep], cc[keep]]))
    LOG.info("Pointer scheme downslope scores: %s", scores)
    if scores["esri"] > scores["native"]:
        return "esri"
    return "native"


@dataclass
class TraceResult:
    path: List[Cell]
    end: str  # "stop" when the predicate fired, "edge" when the next step leaves the raster

    @property
    def last(self) -> Cell:
        return self.path[-1]

    @property
    def steps(self) -> int:
        return len(self.path) - 1


class FlowDirections:
    """
    A decoded D8 pointer grid.
    """

    def __init__(self, pointer: Grid, scheme: str = "native") -> None:
        self.pointer = pointer
        self.scheme = scheme
        self.drow, self.dcol, self.valid = _decode_arrays(pointer, scheme)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.pointer.shape

    @property
    def rows(self) -> int:
        return self.pointer.rows

    @property
    def cols(self) -> int:
        return self.pointer.cols

    @property
    def max_steps(self) -> int:
        return max(1, self.rows * self.cols * 4)

    def in_bounds(self, cell: Cell) -> bool:
        return 0 <= cell[0] < self.rows and 0 <= cell[1] < self.cols

    def is_valid(self, cell: Cell) -> bool:
        return self.in_bounds(cell) and bool(self.valid[cell])

    def offset(self, cell: Cell) -> Tuple[int, int]:
        if not self.in_bounds(cell):
            raise InvalidInput(f"Cell {cell} lies outside the raster ({self.rows} x {self.cols}).")
        if not self.valid[cell]:
            value = self.pointer.data[cell]
            raise InvalidPointer(
                f"Invalid D8 pointer value {value} at row {cell[0]}, col {cell[1]}.",
                cell=cell,
                value=float(value),
            )
        return int(self.drow[cell]), int(self.dcol[cell])

    def downstream(self, cell: Cell) -> Optional[Cell]:
        """
        Next cell downstream, or None when the step leaves the raster.
        """
        dr, dc = self.offset(cell)
        nxt = (cell[0] + dr, cell[1] + dc)
        if not self.in_bounds(nxt):
            return None
        return nxt

    def drains_to(self, src: Cell, dst: Cell) -> bool:
        if not self.is_valid(src):
            return False
        return (src[0] + int(self.drow[src]), src[1] + int(self.dcol[src])) == dst

    def neighbors(self, cell: Cell) -> Iterable[Cell]:
        r, c = cell
        for dr, dc in NEIGHBORS:
            nr, nc = r + dr, c + dc
            if 0 <= nr < self.rows and 0 <= nc < self.cols:
                yield nr, nc

    def inflowing(self, cell: Cell) -> List[Cell]:
        """
        Neighbours whose pointer targets the cell, in NEIGHBORS order.
        """
        return [nb for nb in self.neighbors(cell) if self.drains_to(nb, cell)]

    def validate(self, mask: np.ndarray) -> None:
        """
        Require a decodable pointer for every cell inside the mask.
        """
        bad = mask & ~self.valid
        if np.any(bad):
            r, c = (int(v) for v in np.argwhere(bad)[0])
            raise InvalidPointer(
                f"Invalid D8 pointer value {self.pointer.data[r, c]} at row {r}, col {c} "
                f"({int(np.count_nonzero(bad))} invalid cells inside the watershed).",
                cell=(r, c),
                value=float(self.pointer.data[r, c]),
            )

    def trace(
        self,
        start: Cell,
        stop: Callable[[Cell], bool] | None = None,
        max_steps: int | None = None,
    ) -> TraceResult:
        """
        Follow pointers downstream from start.

        The trace ends on the first cell satisfying `stop`, or on the last cell
        before the flow path leaves the raster.
        """
        if not self.in_bounds(start):
            raise InvalidInput(f"Trace start {start} lies outside the raster.")
        limit = self.max_steps if max_steps is None else max_steps
        visited: set[Cell] = set()
        path: List[Cell] = []
        cell = start
        while True:
            if cell in visited:
                raise LoopDetected(
                    f"Flow path loops near row {cell[0]}, col {cell[1]} after {len(path)} steps.",
                    cell=cell,
                    steps=len(path),
                )
            visited.add(cell)
            path.append(cell)
            if stop is not None and stop(cell):
                return TraceResult(path, "stop")
            nxt = self.downstream(cell)
            if nxt is None:
                return TraceResult(path, "edge")
            if len(path) >= limit:
                raise StepLimitExceeded(
                    f"Exceeded maximum step count ({limit}) near row {cell[0]}, col {cell[1]}.",
                    cell=cell,
                    steps=len(path),
                )
            cell = nxt

    def contributing_area(self, outlet: Cell) -> np.ndarray:
        """
        Boolean mask of every cell whose flow path reaches the outlet.
        """
        area = np.zeros(self.shape, dtype=bool)
        area[outlet] = True
        queue = deque([outlet])
        while queue:
            cell = queue.popleft()
            for nb in self.inflowing(cell):
                if not area[nb]:
                    area[nb] = True
                    queue.append(nb)
        return area
