"""
Stream junction classification: inflowing stream neighbours per stream cell.
"""

from __future__ import annotations

import logging

import numpy as np

from derive_topaz.common.errors import InvalidInput
from derive_topaz.common.grid import Grid
from derive_topaz.process.d8 import NEIGHBORS, FlowDirections

LOG = logging.getLogger(__name__)

HEADWATER = 0
MID_LINK = 1
JUNCTION = 2


def junction_counts(flow: FlowDirections, streams: np.ndarray) -> np.ndarray:
    """
    Count, for every stream cell, the stream neighbours whose pointer targets it.

    Non-stream cells hold -1.
    """
    if streams.shape != flow.shape:
        raise InvalidInput(f"Stream mask shape {streams.shape} does not match pointer grid {flow.shape}.")
    rows, cols = streams.shape
    counts = np.zeros((rows, cols), dtype=np.int16)
    for dr, dc in NEIGHBORS:
        # neighbour at (r + dr, c + dc) drains into (r, c) when its step is (-dr, -dc)
        points_back = streams & flow.valid & (flow.drow == -dr) & (flow.dcol == -dc)
        r0, r1 = max(0, -dr), rows - max(0, dr)
        c0, c1 = max(0, -dc), cols - max(0, dc)
        if r0 >= r1 or c0 >= c1:
            continue
        counts[r0:r1, c0:c1] += points_back[r0 + dr : r1 + dr, c0 + dc : c1 + dc]
    counts[~streams] = -1
    return counts


def validate_junction_classes(grid: Grid) -> np.ndarray:
    """
    Check a supplied junction-class grid (0 headwater, 1 mid-link, 2 junction).
    """
    valid = grid.valid_mask()
    values = np.full(grid.shape, -1, dtype=np.int16)
    values[valid] = np.rint(grid.data[valid]).astype(np.int16)
    too_many = values >= 3
    if np.any(too_many):
        r, c = (int(v) for v in np.argwhere(too_many)[0])
        raise InvalidInput(
            f"Junction class {values[r, c]} at row {r}, col {c}: channel junctions with 3 or more "
            "inflows are not supported."
        )
    return values


def compare_junction_classes(classes: np.ndarray, counts: np.ndarray) -> int:
    """
    Log how many stream cells disagree between supplied classes and computed counts.
    """
    stream = counts >= 0
    mismatch = stream & (classes != counts)
    n_mismatch = int(np.count_nonzero(mismatch))
    if n_mismatch:
        r, c = (int(v) for v in np.argwhere(mismatch)[0])
        LOG.warning(
            "Supplied junction classes disagree with computed inflow counts at %d stream cells "
            "(first at row %d, col %d: supplied %d, computed %d).",
            n_mismatch,
            r,
            c,
            classes[r, c],
            counts[r, c],
        )
    return n_mismatch
