"""
Hillslope labelling of the watershed around the TOPAZ-numbered channel network.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, List, Tuple

import numpy as np
from tqdm import tqdm

from derive_topaz.common.errors import InvalidInput, InvalidPointer
from derive_topaz.process.d8 import FlowDirections
from derive_topaz.process.network import ChannelTree
from derive_topaz.process.topaz import rotation_degrees

LOG = logging.getLogger(__name__)

Cell = Tuple[int, int]

LABEL_NODATA = -9999

# phase codes stored per labelled cell
CHANNEL = 1
HEADWATER = 2
SIDE_BUFFER = 3
RESIDUAL = 4


def side_label(topaz_id: int, channel_vector: Tuple[int, int], inflow_vector: Tuple[int, int]) -> int:
    """
    Left (id - 2) or right (id - 1) hillslope label for flow entering a channel cell.
    """
    if rotation_degrees(channel_vector, inflow_vector) < 180.0:
        return topaz_id - 2
    return topaz_id - 1


class HillslopeLabeler:
    """
    Owns the label buffer and runs the labelling phases in order.

    Every phase writes only unlabeled cells; `phase` records which one wrote each cell.
    """

    def __init__(self, tree: ChannelTree, flow: FlowDirections, mask: np.ndarray) -> None:
        if mask.shape != flow.shape:
            raise InvalidInput(f"Watershed mask shape {mask.shape} does not match pointer grid {flow.shape}.")
        self.tree = tree
        self.flow = flow
        self.mask = mask.astype(bool)
        self.labels = np.full(flow.shape, LABEL_NODATA, dtype=np.int32)
        self.phase = np.zeros(flow.shape, dtype=np.int8)

    def _unlabeled(self, cell: Cell) -> bool:
        return bool(self.mask[cell]) and self.labels[cell] == LABEL_NODATA

    def _assign(self, cell: Cell, label: int, phase: int) -> None:
        if self.labels[cell] != LABEL_NODATA:
            raise InvalidInput(
                f"Cell at row {cell[0]}, col {cell[1]} already labelled {self.labels[cell]} "
                f"(phase {self.phase[cell]}); refusing to relabel as {label}."
            )
        self.labels[cell] = label
        self.phase[cell] = phase

    def _channel_vector(self, cell: Cell) -> Tuple[int, int]:
        try:
            return self.flow.offset(cell)
        except InvalidPointer as exc:
            raise InvalidInput(f"Channel cell at row {cell[0]}, col {cell[1]} has no flow direction: {exc}") from exc

    def stamp_channels(self) -> int:
        count = 0
        for link in self.tree:
            for cell in link.cells:
                if not self.mask[cell]:
                    raise InvalidInput(f"Channel cell at row {cell[0]}, col {cell[1]} lies outside the watershed.")
                self._assign(cell, link.topaz_id, CHANNEL)
                count += 1
        return count

    def fill_headwaters(self) -> int:
        count = 0
        for link in self.tree.headwaters():
            label = link.topaz_id - 3
            queue = deque([link.us])
            while queue:
                cell = queue.popleft()
                for nb in self.flow.inflowing(cell):
                    if self._unlabeled(nb):
                        self._assign(nb, label, HEADWATER)
                        queue.append(nb)
                        count += 1
        return count

    def label_side_buffers(self) -> int:
        count = 0
        for link in self.tree:
            for cell in reversed(link.cells):
                channel_vector = self._channel_vector(cell)
                for nb in self.flow.inflowing(cell):
                    if not self._unlabeled(nb):
                        continue
                    inflow_vector = (cell[0] - nb[0], cell[1] - nb[1])
                    self._assign(nb, side_label(link.topaz_id, channel_vector, inflow_vector), SIDE_BUFFER)
                    count += 1
        return count

    def _residual_label(self, start: Cell) -> Tuple[List[Cell], int]:
        path: List[Cell] = []
        seen: set[Cell] = set()
        cell = start
        while self.labels[cell] == LABEL_NODATA:
            path.append(cell)
            seen.add(cell)
            if len(path) > self.flow.max_steps:
                raise InvalidInput(f"Residual trace from row {start[0]}, col {start[1]} did not terminate.")
            nxt = self.flow.downstream(cell)
            if nxt is None or not self.mask[nxt]:
                raise InvalidInput(
                    f"Flow path from row {start[0]}, col {start[1]} leaves the watershed at row {cell[0]}, "
                    f"col {cell[1]} before reaching a labelled cell."
                )
            if nxt in seen:
                raise InvalidInput(f"Flow path from row {start[0]}, col {start[1]} loops at row {nxt[0]}, col {nxt[1]}.")
            cell = nxt

        label = int(self.labels[cell])
        if label % 10 == 4:
            inflow_vector = (cell[0] - path[-1][0], cell[1] - path[-1][1])
            label = side_label(label, self._channel_vector(cell), inflow_vector)
        return path, label

    def fill_residual(self) -> int:
        count = 0
        for r in tqdm(range(self.flow.rows), desc="Residual fill", leave=False):
            for c in range(self.flow.cols):
                if not self._unlabeled((r, c)):
                    continue
                path, label = self._residual_label((r, c))
                for cell in path:
                    self._assign(cell, label, RESIDUAL)
                count += len(path)
        return count

    def run(self) -> np.ndarray:
        counts: Dict[str, int] = {
            "channel": self.stamp_channels(),
            "headwater": self.fill_headwaters(),
            "side": self.label_side_buffers(),
            "residual": self.fill_residual(),
        }
        LOG.info("Labelled cells per phase: %s", counts)

        missing = self.mask & (self.labels == LABEL_NODATA)
        if np.any(missing):
            r, c = (int(v) for v in np.argwhere(missing)[0])
            raise InvalidInput(
                f"{int(np.count_nonzero(missing))} watershed cells left unlabeled (first at row {r}, col {c})."
            )
        return self.labels


def label_hillslopes(tree: ChannelTree, flow: FlowDirections, mask: np.ndarray) -> np.ndarray:
    return HillslopeLabeler(tree, flow, mask).run()


def assign_link_areas(tree: ChannelTree, labels: np.ndarray, cell_area: float) -> ChannelTree:
    """
    Own channel plus hillslope area of each link, accumulated from upstream links.
    """
    values, counts = np.unique(labels[labels != LABEL_NODATA], return_counts=True)
    per_label = dict(zip(values.tolist(), counts.tolist()))
    for link in tree:
        own = sum(per_label.get(link.topaz_id - k, 0) for k in range(4))
        link.areaup = own * cell_area
    # children always follow their parent in creation order
    for link in reversed(tree.links):
        if link.downstream_id != -1:
            tree[link.downstream_id].areaup += link.areaup
    return tree
