"""
Channel network decomposition: upstream breadth-first walk from the outlet into links.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import numpy as np

from derive_topaz.common.errors import InvalidInput, LoopDetected
from derive_topaz.common.grid import Grid
from derive_topaz.process.d8 import FlowDirections
from derive_topaz.process.junctions import HEADWATER, JUNCTION, MID_LINK

LOG = logging.getLogger(__name__)

Cell = Tuple[int, int]


@dataclass
class Link:
    """
    A channel segment between two topological breakpoints.

    `path` runs upstream to downstream. For every link but the outlet link the
    last path cell is the junction it drains into, which belongs to the
    downstream link.
    """

    id: int
    us: Cell
    ds: Cell
    path: List[Cell]
    is_outlet: bool = False
    is_headwater: bool = False
    downstream_id: int = -1
    inflow0_id: int = -1
    inflow1_id: int = -1
    topaz_id: int = 0
    length_m: float = 0.0
    us_z: float = float("nan")
    ds_z: float = float("nan")
    drop_m: float = float("nan")
    order: int = 0
    areaup: float = 0.0

    @property
    def cells(self) -> List[Cell]:
        """Cells owned by this link (the downstream junction excluded)."""
        if self.is_outlet:
            return list(self.path)
        return self.path[:-1]

    @property
    def inflows(self) -> List[int]:
        return [i for i in (self.inflow0_id, self.inflow1_id) if i != -1]


@dataclass
class ChannelTree:
    links: List[Link] = field(default_factory=list)

    def __iter__(self) -> Iterator[Link]:
        return iter(self.links)

    def __len__(self) -> int:
        return len(self.links)

    def __getitem__(self, link_id: int) -> Link:
        return self.links[link_id]

    @property
    def outlet(self) -> Link:
        return self.links[0]

    def headwaters(self) -> List[Link]:
        return [link for link in self.links if link.is_headwater]


def _path_length(path: List[Cell], cell_size_x: float, cell_size_y: float) -> float:
    diag = math.hypot(cell_size_x, cell_size_y)
    length = 0.0
    for (r1, c1), (r2, c2) in zip(path[:-1], path[1:]):
        if r1 == r2:
            length += cell_size_x
        elif c1 == c2:
            length += cell_size_y
        else:
            length += diag
    return length


def _sample(grid: Optional[Grid], cell: Cell) -> float:
    if grid is None:
        return float("nan")
    return grid.value(*cell)


def build_channel_network(
    flow: FlowDirections,
    streams: np.ndarray,
    outlet: Cell,
    mask: Optional[np.ndarray] = None,
    dem: Optional[Grid] = None,
    order: Optional[Grid] = None,
) -> ChannelTree:
    """
    Split the stream network draining to `outlet` into links.

    Walks upstream from the outlet; a cell with one inflowing stream neighbour
    extends the current link, none closes it as a headwater, two close it at a
    junction and start one new link per inflow. Link ids follow creation order.
    """
    if not streams[outlet]:
        raise InvalidInput(f"Outlet at row {outlet[0]}, col {outlet[1]} is not a stream cell.")
    if mask is not None and not mask[outlet]:
        raise InvalidInput(f"Outlet at row {outlet[0]}, col {outlet[1]} lies outside the watershed.")

    def stream_inflows(cell: Cell) -> List[Cell]:
        return [
            nb for nb in flow.inflowing(cell) if streams[nb] and (mask is None or mask[nb])
        ]

    tree = ChannelTree()
    visited: set[Cell] = set()
    queue: deque[Tuple[Cell, int, Optional[Cell]]] = deque([(outlet, -1, None)])
    while queue:
        start, downstream_id, junction = queue.popleft()
        link_id = len(tree.links)
        upstream_cells: List[Cell] = []
        cell = start
        while True:
            if cell in visited:
                raise LoopDetected(
                    f"Channel walk revisits row {cell[0]}, col {cell[1]} in link {link_id}.",
                    cell=cell,
                    steps=len(upstream_cells),
                )
            visited.add(cell)
            upstream_cells.append(cell)
            inflows = stream_inflows(cell)
            if len(inflows) == MID_LINK:
                cell = inflows[0]
                continue
            if len(inflows) > JUNCTION:
                raise InvalidInput(
                    f"Channel junction at row {cell[0]}, col {cell[1]} receives {len(inflows)} inflowing "
                    "channels; only two are supported."
                )
            break

        path = upstream_cells[::-1]
        if junction is not None:
            path.append(junction)
        link = Link(
            id=link_id,
            us=path[0],
            ds=path[-1],
            path=path,
            is_outlet=downstream_id == -1,
            is_headwater=len(inflows) == HEADWATER,
            downstream_id=downstream_id,
        )
        tree.links.append(link)
        if downstream_id != -1:
            parent = tree.links[downstream_id]
            if parent.inflow0_id == -1:
                parent.inflow0_id = link_id
            else:
                parent.inflow1_id = link_id
        for inflow in inflows:
            queue.append((inflow, link_id, cell))

    for link in tree.links:
        link.length_m = _path_length(link.path, flow.pointer.cell_size_x, flow.pointer.cell_size_y)
        link.us_z = _sample(dem, link.us)
        link.ds_z = _sample(dem, link.ds)
        link.drop_m = link.us_z - link.ds_z
        if order is not None:
            # the downstream-most cell owned by the link
            sampled = order.value(*link.cells[-1])
            link.order = 0 if math.isnan(sampled) else int(sampled)

    if order is None:
        strahler_order(tree)

    LOG.info(
        "Channel network: %d links (%d headwaters) upstream of row %d, col %d.",
        len(tree),
        len(tree.headwaters()),
        outlet[0],
        outlet[1],
    )
    return tree


def strahler_order(tree: ChannelTree) -> None:
    """
    Assign Strahler order; children always follow their parent in creation order.
    """
    for link in reversed(tree.links):
        if link.is_headwater:
            link.order = 1
            continue
        orders = sorted((tree[i].order for i in link.inflows), reverse=True)
        if len(orders) > 1 and orders[0] == orders[1]:
            link.order = orders[0] + 1
        else:
            link.order = orders[0]
