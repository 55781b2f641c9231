"""
Outlet (pour point) location from a watershed mask or a requested start cell.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from tqdm import tqdm

from derive_topaz.common.errors import InvalidInput, InvalidPointer, LoopDetected, StepLimitExceeded
from derive_topaz.common.grid import Grid
from derive_topaz.process.d8 import NEIGHBORS, FlowDirections

LOG = logging.getLogger(__name__)

Cell = Tuple[int, int]

MAX_CANDIDATES = 512
MAX_REASONS = 5
PERIMETER_SAMPLE = 5
RULES = ("junction", "boundary")


@dataclass
class WatershedMask:
    inside: np.ndarray
    perimeter: np.ndarray
    centroid_row: float
    centroid_col: float

    @property
    def cell_count(self) -> int:
        return int(np.count_nonzero(self.inside))

    @property
    def perimeter_count(self) -> int:
        return int(np.count_nonzero(self.perimeter))


@dataclass
class OutletResult:
    row: int
    col: int
    mode: str
    start_row: int
    start_col: int
    steps_taken: int
    steps_beyond_mask: int
    junction_count: int
    start_offset_cells: int = 0
    candidate_rank: Optional[int] = None
    candidates_considered: int = 0
    distance_to_boundary: Optional[int] = None
    start_in_mask: bool = False
    outlet_in_mask: bool = False
    outlet_downstream_of_mask: bool = False
    centroid_row: Optional[float] = None
    centroid_col: Optional[float] = None
    watershed_cell_count: int = 0
    perimeter_cell_count: int = 0
    perimeter_stream_count: int = 0
    perimeter_stream_samples: List[Dict[str, int]] = field(default_factory=list)
    requested_row: Optional[int] = None
    requested_col: Optional[int] = None
    requested_lon: Optional[float] = None
    requested_lat: Optional[float] = None
    easting: Optional[float] = None
    northing: Optional[float] = None
    epsg: Optional[int] = None

    @property
    def cell(self) -> Cell:
        return self.row, self.col

    def to_properties(self) -> Dict:
        props = asdict(self)
        props["column"] = props.pop("col")
        return props


def build_watershed_mask(watershed: Grid) -> WatershedMask:
    """
    Binary mask, centroid and perimeter of a watershed grid.
    """
    inside = watershed.positive_mask()
    total = int(np.count_nonzero(inside))
    if total == 0:
        raise InvalidInput("Watershed raster does not contain any positive-valued cells.")
    rr, cc = np.nonzero(inside)
    # cells beyond the raster edge count as outside
    padded = np.pad(inside, 1, mode="constant", constant_values=False)
    rows, cols = inside.shape
    interior = np.ones_like(inside)
    for dr, dc in NEIGHBORS:
        interior &= padded[1 + dr : 1 + dr + rows, 1 + dc : 1 + dc + cols]
    perimeter = inside & ~interior
    return WatershedMask(
        inside=inside,
        perimeter=perimeter,
        centroid_row=float(rr.mean()),
        centroid_col=float(cc.mean()),
    )


def distance_from_perimeter(mask: WatershedMask) -> np.ndarray:
    """
    Breadth-first 8-connected distance of each inside cell from the perimeter (-1 outside).
    """
    inside = mask.inside
    rows, cols = inside.shape
    distances = np.full(inside.shape, -1, dtype=np.int32)
    queue: deque[Cell] = deque()
    for r, c in np.argwhere(mask.perimeter):
        distances[r, c] = 0
        queue.append((int(r), int(c)))
    while queue:
        r, c = queue.popleft()
        base = distances[r, c]
        for dr, dc in NEIGHBORS:
            nr, nc = r + dr, c + dc
            if 0 <= nr < rows and 0 <= nc < cols and inside[nr, nc] and distances[nr, nc] == -1:
                distances[nr, nc] = base + 1
                queue.append((nr, nc))
    return distances


def rank_candidates(mask: WatershedMask, distances: np.ndarray, limit: int = MAX_CANDIDATES) -> List[Tuple[int, Cell]]:
    """
    Inside cells ordered by descending distance from the perimeter; ties stay in row-major order.
    """
    cells = np.argwhere(mask.inside)
    dist = distances[cells[:, 0], cells[:, 1]]
    order = np.argsort(-dist, kind="stable")[: max(0, limit)]
    return [(int(dist[i]), (int(cells[i, 0]), int(cells[i, 1]))) for i in order]


def nearest_valid_cell(flow: FlowDirections, row: int, col: int) -> Optional[Tuple[Cell, int]]:
    """
    Closest in-bounds cell (BFS rings) with a decodable pointer, plus its ring offset.
    """
    start = (min(max(row, 0), flow.rows - 1), min(max(col, 0), flow.cols - 1))
    queue: deque[Tuple[Cell, int]] = deque([(start, 0)])
    seen = {start}
    while queue:
        cell, dist = queue.popleft()
        if flow.valid[cell]:
            return cell, dist
        for nb in flow.neighbors(cell):
            if nb not in seen:
                seen.add(nb)
                queue.append((nb, dist + 1))
    return None


def lng_lat_to_row_col(grid: Grid, lon: float, lat: float) -> Cell:
    """
    Convert a lon/lat pair through the grid transform; requires a geographic CRS.
    """
    if not grid.is_geographic:
        raise InvalidInput(
            f"Unable to convert requested outlet lon/lat ({lon}, {lat}) to raster coordinates for "
            f"CRS {grid.crs.to_string() if grid.crs else 'None'}. Provide a row/col instead."
        )
    row, col = grid.rowcol(lon, lat)
    return min(max(row, 0), grid.rows - 1), min(max(col, 0), grid.cols - 1)


class _OutletTrace:
    """
    Stateful stop predicate for one outlet trace.
    """

    def __init__(
        self,
        flow: FlowDirections,
        streams: np.ndarray,
        junctions: np.ndarray,
        mask: Optional[np.ndarray],
        requested: bool,
        rule: str,
        start: Cell,
    ) -> None:
        self.flow = flow
        self.streams = streams
        self.junctions = junctions
        self.mask = mask
        self.requested = requested
        self.rule = rule
        self.start = start
        self.has_left_mask = False
        self.steps_beyond_mask = 0
        self.last_mismatch: Optional[Tuple[int, int, int]] = None

    def _inside(self, cell: Cell) -> bool:
        return self.mask is None or bool(self.mask[cell])

    def __call__(self, cell: Cell) -> bool:
        if not self._inside(cell):
            self.has_left_mask = True
            if cell != self.start:
                self.steps_beyond_mask += 1

        is_stream = bool(self.streams[cell])
        count = int(self.junctions[cell])

        if self.rule == "boundary" and not self.requested:
            nxt = self.flow.downstream(cell)
            return nxt is None or not self._inside(nxt)

        if not (is_stream and count == 1):
            if is_stream:
                self.last_mismatch = (cell[0], cell[1], count)
            return False
        if self.requested or self.has_left_mask:
            return True
        nxt = self.flow.downstream(cell)
        return nxt is None or not self._inside(nxt)


def _trace_outlet(
    flow: FlowDirections,
    streams: np.ndarray,
    junctions: np.ndarray,
    mask: Optional[np.ndarray],
    start: Cell,
    label: str,
    requested: bool,
    rule: str,
) -> Tuple[Optional[Dict], Optional[str]]:
    state = _OutletTrace(flow, streams, junctions, mask, requested, rule, start)
    try:
        result = flow.trace(start, stop=state)
    except LoopDetected as exc:
        reason = f"{label}: flow path loops near row {exc.cell[0]}, col {exc.cell[1]}."
    except StepLimitExceeded as exc:
        where = "while searching downstream of the watershed" if state.has_left_mask else "before exiting watershed"
        reason = f"{label}: exceeded maximum step count ({exc.steps}) {where}."
    except InvalidPointer as exc:
        reason = f"{label}: {exc}"
    else:
        boundary_miss = rule == "boundary" and not requested and not streams[result.last]
        if result.end == "stop" and not boundary_miss:
            outlet = result.last
            return (
                {
                    "outlet": outlet,
                    "steps_taken": result.steps,
                    "steps_beyond_mask": state.steps_beyond_mask,
                    "outlet_downstream_of_mask": state.has_left_mask,
                    "junction_count": int(junctions[outlet]),
                },
                None,
            )
        last = result.last
        if streams[last]:
            reason = (
                f"{label}: reached raster edge at row {last[0]}, col {last[1]} with junction count "
                f"{int(junctions[last])} (expected 1)."
            )
        elif boundary_miss:
            reason = f"{label}: watershed boundary at row {last[0]}, col {last[1]} is not a stream cell."
        else:
            reason = f"{label}: exited raster at row {last[0]}, col {last[1]} without hitting a stream."
    if state.last_mismatch is not None:
        jr, jc, jcnt = state.last_mismatch
        reason += f" Latest stream encountered at row {jr}, col {jc} had junction count {jcnt}."
    return None, reason


def find_outlet(
    flow: FlowDirections,
    streams: np.ndarray,
    junctions: np.ndarray,
    watershed: Grid | None = None,
    requested_row_col: Tuple[int, int] | None = None,
    requested_lng_lat: Tuple[float, float] | None = None,
    rule: str = "junction",
    max_candidates: int = MAX_CANDIDATES,
) -> OutletResult:
    """
    Locate the single stream outlet of a watershed.

    With a requested row/col or lon/lat the trace starts from that cell alone;
    otherwise the watershed mask supplies candidates ranked by distance from its
    perimeter and the first candidate whose flow path reaches an acceptable
    stream cell wins.
    """
    if rule not in RULES:
        raise InvalidInput(f"Unknown outlet rule '{rule}'. Use one of {RULES}.")
    if requested_row_col is not None and requested_lng_lat is not None:
        raise InvalidInput("Specify either a requested row/col or a requested lon/lat, not both.")
    if watershed is None and requested_row_col is None and requested_lng_lat is None:
        raise InvalidInput("Either a watershed mask or a requested outlet location must be provided.")

    pointer = flow.pointer
    ws: Optional[WatershedMask] = None
    distances: Optional[np.ndarray] = None
    perimeter_streams: List[Cell] = []
    if watershed is not None:
        ws = build_watershed_mask(watershed)
        perimeter_streams = [(int(r), int(c)) for r, c in np.argwhere(ws.perimeter & streams)]
        LOG.info("Identified %d watershed cells (%d boundary cells).", ws.cell_count, ws.perimeter_count)
        if perimeter_streams:
            LOG.warning("Watershed perimeter intersects %d stream cells.", len(perimeter_streams))
        distances = distance_from_perimeter(ws)
    mask = ws.inside if ws is not None else None

    requested_cell: Optional[Cell] = None
    if requested_row_col is not None:
        row, col = requested_row_col
        requested_cell = (min(max(int(row), 0), flow.rows - 1), min(max(int(col), 0), flow.cols - 1))
    elif requested_lng_lat is not None:
        requested_cell = lng_lat_to_row_col(pointer, *requested_lng_lat)

    reasons: List[str] = []
    found: Optional[Dict] = None
    start: Optional[Cell] = None
    offset = 0
    rank: Optional[int] = None
    considered = 0

    if requested_cell is not None:
        snapped = nearest_valid_cell(flow, *requested_cell)
        if snapped is None:
            reasons.append(
                f"Requested start: unable to locate a valid D8 cell near row {requested_cell[0]}, "
                f"col {requested_cell[1]}."
            )
        else:
            start, offset = snapped
            if offset:
                LOG.info("Requested start snapped %d cells to row %d, col %d.", offset, *start)
            found, reason = _trace_outlet(flow, streams, junctions, mask, start, "Requested start", True, rule)
            if reason:
                reasons.append(reason)
    else:
        candidates = rank_candidates(ws, distances, max_candidates)
        for idx, (_dist, cell) in enumerate(tqdm(candidates, desc="Outlet candidates", unit="cell", leave=False)):
            considered = idx + 1
            found, reason = _trace_outlet(flow, streams, junctions, mask, cell, f"Candidate {idx}", False, rule)
            if found is not None:
                start, rank = cell, idx
                break
            LOG.debug(reason)
            if len(reasons) < MAX_REASONS:
                reasons.append(reason)

    if found is None:
        if requested_cell is not None:
            message = "Failed to trace a valid outlet from the requested location."
        else:
            message = "Failed to identify an outlet stream cell for the provided watershed mask."
        if reasons:
            message += " Reasons considered: " + " | ".join(reasons[:MAX_REASONS])
        raise InvalidInput(message)

    outlet = found["outlet"]
    easting, northing = pointer.xy(*outlet)
    distance = None
    if distances is not None and distances[start] >= 0:
        distance = int(distances[start])
    result = OutletResult(
        row=outlet[0],
        col=outlet[1],
        mode="requested" if requested_cell is not None else "watershed",
        start_row=start[0],
        start_col=start[1],
        steps_taken=found["steps_taken"],
        steps_beyond_mask=found["steps_beyond_mask"],
        junction_count=found["junction_count"],
        start_offset_cells=offset,
        candidate_rank=rank,
        candidates_considered=considered,
        distance_to_boundary=distance,
        start_in_mask=bool(mask[start]) if mask is not None else False,
        outlet_in_mask=bool(mask[outlet]) if mask is not None else False,
        outlet_downstream_of_mask=found["outlet_downstream_of_mask"],
        centroid_row=ws.centroid_row if ws is not None else None,
        centroid_col=ws.centroid_col if ws is not None else None,
        watershed_cell_count=ws.cell_count if ws is not None else 0,
        perimeter_cell_count=ws.perimeter_count if ws is not None else 0,
        perimeter_stream_count=len(perimeter_streams),
        perimeter_stream_samples=[{"row": r, "col": c} for r, c in perimeter_streams[:PERIMETER_SAMPLE]],
        requested_row=requested_cell[0] if requested_cell is not None else None,
        requested_col=requested_cell[1] if requested_cell is not None else None,
        requested_lon=requested_lng_lat[0] if requested_lng_lat is not None else None,
        requested_lat=requested_lng_lat[1] if requested_lng_lat is not None else None,
        easting=easting if math.isfinite(easting) else None,
        northing=northing if math.isfinite(northing) else None,
        epsg=pointer.epsg,
    )
    LOG.info(
        "Outlet at row %d, col %d (mode %s, candidate %s, distance %s, steps %d, beyond mask %d).",
        result.row,
        result.col,
        result.mode,
        result.candidate_rank,
        result.distance_to_boundary,
        result.steps_taken,
        result.steps_beyond_mask,
    )
    return result
