"""
Vector features for the channel network and the outlet.
"""

from __future__ import annotations

import logging

import geopandas as gpd
import rasterio
from shapely.geometry import LineString, Point

from derive_topaz.common.grid import Grid
from derive_topaz.process.links import LINK_COLUMNS, links_to_frame
from derive_topaz.process.network import ChannelTree
from derive_topaz.process.outlet import OutletResult

LOG = logging.getLogger(__name__)


def links_to_lines(tree: ChannelTree, grid: Grid) -> gpd.GeoDataFrame:
    """
    One LineString per link through its cell centres, upstream to downstream.
    """
    frame = links_to_frame(tree)
    geoms = []
    for link in tree:
        rows_list, cols_list = zip(*link.path)
        xs, ys = rasterio.transform.xy(grid.transform, rows_list, cols_list, offset="center")  # type: ignore
        coords = list(zip(xs, ys))
        if len(coords) == 1:
            # single-cell outlet link
            coords = coords * 2
        geoms.append(LineString(coords))
    return gpd.GeoDataFrame(frame[LINK_COLUMNS], geometry=geoms, crs=grid.crs)


def outlet_to_point(outlet: OutletResult, grid: Grid) -> gpd.GeoDataFrame:
    x, y = grid.xy(outlet.row, outlet.col)
    props = outlet.to_properties()
    # nested samples do not fit a flat attribute table
    props["perimeter_stream_samples"] = ";".join(f"{s['row']},{s['col']}" for s in outlet.perimeter_stream_samples)
    return gpd.GeoDataFrame([props], geometry=[Point(x, y)], crs=grid.crs)
