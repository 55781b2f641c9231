"""
TOPAZ channel numbering.

Channel ids end in 4. The outlet link is 24; at every junction, visited in
link creation order, the left inflow takes the running maximum + 10 and the
right inflow the running maximum + 20.
"""

from __future__ import annotations

import logging
import math
from typing import Tuple

from derive_topaz.common.errors import InvalidInput
from derive_topaz.process.d8 import FlowDirections
from derive_topaz.process.network import ChannelTree, Link

LOG = logging.getLogger(__name__)

OUTLET_TOPAZ_ID = 24
TOPAZ_STEP = 10


def rotation_degrees(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    """
    Angle from vector a to vector b in [0, 360), both given as (row, col) steps.

    Measured in the frame x = row, y = -col, so angles grow clockwise on the map.
    """
    ax, ay = a[0], -a[1]
    bx, by = b[0], -b[1]
    if (ax == 0 and ay == 0) or (bx == 0 and by == 0):
        raise InvalidInput(f"Undefined flow vector (a={a}, b={b}).")
    theta = math.degrees(math.atan2(ax * by - ay * bx, ax * bx + ay * by))
    if theta < 0:
        theta += 360.0
    # -0.0 and rounding just below 360 both fold onto the range
    return 0.0 if theta >= 360.0 else theta


def _upstream_vector(link: Link, flow: FlowDirections) -> Tuple[int, int]:
    if link.us != link.ds:
        return link.us[0] - link.ds[0], link.us[1] - link.ds[1]
    dr, dc = flow.offset(link.ds)
    return -dr, -dc


def assign_topaz_ids(tree: ChannelTree, flow: FlowDirections) -> ChannelTree:
    if not len(tree):
        raise InvalidInput("Channel network has no links.")
    outlet = tree.outlet
    if not outlet.is_outlet:
        raise InvalidInput("No outlet link found.")

    outlet.topaz_id = OUTLET_TOPAZ_ID
    current_max = OUTLET_TOPAZ_ID
    for link in tree:
        if link.is_headwater:
            continue
        if link.topaz_id <= 0:
            raise InvalidInput(f"Link {link.id} was reached before its downstream link was numbered.")
        inflows = link.inflows
        if len(inflows) != 2:
            raise InvalidInput(f"Link {link.id} has {len(inflows)} inflows; expected 0 or 2.")

        try:
            a = _upstream_vector(link, flow)
        except InvalidInput as exc:
            raise InvalidInput(f"Cannot determine flow direction of link {link.id}: {exc}") from exc
        angles = []
        for child_id in inflows:
            child = tree[child_id]
            b = (child.ds[0] - child.us[0], child.ds[1] - child.us[1])
            angles.append((rotation_degrees(a, b), child_id))

        left, right = angles if angles[0][0] <= angles[1][0] else angles[::-1]
        tree[left[1]].topaz_id = current_max + TOPAZ_STEP
        tree[right[1]].topaz_id = current_max + 2 * TOPAZ_STEP
        current_max += 2 * TOPAZ_STEP

    LOG.info("Assigned TOPAZ ids %d..%d to %d links.", OUTLET_TOPAZ_ID, current_max, len(tree))
    return tree
