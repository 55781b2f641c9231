"""
End-to-end TOPAZ topology: outlet, channel links, TOPAZ ids and hillslope labels.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Tuple

import numpy as np

from derive_topaz.common.errors import InvalidInput
from derive_topaz.common.grid import Grid, require_same_geometry
from derive_topaz.common.raster import read_grid, write_grid
from derive_topaz.process.d8 import SCHEMES, FlowDirections, detect_scheme
from derive_topaz.process.hillslopes import LABEL_NODATA, assign_link_areas, label_hillslopes
from derive_topaz.process.junctions import compare_junction_classes, junction_counts, validate_junction_classes
from derive_topaz.process.links import write_link_table
from derive_topaz.process.network import build_channel_network
from derive_topaz.process.outlet import MAX_CANDIDATES, find_outlet
from derive_topaz.process.topaz import assign_topaz_ids
from derive_topaz.process.vectorize import links_to_lines, outlet_to_point

LOG = logging.getLogger(__name__)


def _load(source: Grid | Path | str | None, label: str) -> Grid | None:
    if source is None or isinstance(source, Grid):
        return source
    LOG.info("Reading %s grid from %s", label, source)
    return read_grid(Path(source))


def derive_topaz(
    d8: Grid | Path,
    streams: Grid | Path,
    watershed: Grid | Path | None = None,
    dem: Grid | Path | None = None,
    order: Grid | Path | None = None,
    chnjnt: Grid | Path | None = None,
    outlet_row_col: Tuple[int, int] | None = None,
    outlet_lng_lat: Tuple[float, float] | None = None,
    pointer_scheme: str = "auto",
    outlet_rule: str = "junction",
    max_candidates: int = MAX_CANDIDATES,
    find_outlet_only: bool = False,
) -> Dict:
    """
    Locate the outlet and build the TOPAZ channel network and hillslope labels.

    Grids are given in memory or as raster paths and must share one geometry.
    Returns a dict with the pointer grid, the scheme used, the outlet record,
    and unless `find_outlet_only` the channel tree, label array and labelling mask.

    Labels cover the D8 contributing area of the located outlet rather than the
    supplied watershed: supplied cells that do not drain to the outlet stay
    nodata (with a warning), and an outlet found downstream of the watershed
    also labels the cells between the watershed boundary and that outlet.
    """
    pointer = _load(d8, "D8 pointer")
    stream_grid = _load(streams, "stream")
    watershed_grid = _load(watershed, "watershed")
    dem_grid = _load(dem, "DEM")
    order_grid = _load(order, "stream order")
    chnjnt_grid = _load(chnjnt, "junction class")
    require_same_geometry(
        d8=pointer,
        streams=stream_grid,
        watershed=watershed_grid,
        dem=dem_grid,
        order=order_grid,
        chnjnt=chnjnt_grid,
    )

    if pointer_scheme == "auto":
        scheme = detect_scheme(pointer, dem_grid)
    elif pointer_scheme in SCHEMES:
        scheme = pointer_scheme
    else:
        raise InvalidInput(f"Unknown pointer scheme '{pointer_scheme}'. Use auto, native or esri.")
    LOG.info("Using %s D8 pointer scheme.", scheme)
    flow = FlowDirections(pointer, scheme)

    stream_mask = stream_grid.positive_mask()
    if not np.any(stream_mask):
        raise InvalidInput("Stream grid holds no stream cells.")
    counts = junction_counts(flow, stream_mask)
    if chnjnt_grid is not None:
        compare_junction_classes(validate_junction_classes(chnjnt_grid), counts)

    outlet = find_outlet(
        flow,
        stream_mask,
        counts,
        watershed=watershed_grid,
        requested_row_col=outlet_row_col,
        requested_lng_lat=outlet_lng_lat,
        rule=outlet_rule,
        max_candidates=max_candidates,
    )
    result: Dict = {"pointer": pointer, "scheme": scheme, "outlet": outlet}
    if find_outlet_only:
        return result

    mask = flow.contributing_area(outlet.cell)
    if watershed_grid is not None:
        stray = watershed_grid.positive_mask() & ~mask
        if np.any(stray):
            LOG.warning(
                "%d watershed cells do not drain to the outlet and are left unlabeled.",
                int(np.count_nonzero(stray)),
            )
    LOG.info("Labelling %d cells draining to the outlet.", int(np.count_nonzero(mask)))
    # cells join the contributing area only through a decodable pointer, so this
    # catches an outlet reached by a step from upstream whose own pointer is invalid
    flow.validate(mask)

    tree = build_channel_network(flow, stream_mask, outlet.cell, mask=mask, dem=dem_grid, order=order_grid)
    assign_topaz_ids(tree, flow)
    labels = label_hillslopes(tree, flow, mask)
    assign_link_areas(tree, labels, pointer.cell_area)

    result.update({"tree": tree, "labels": labels, "mask": mask})
    return result


def write_topaz_outputs(result: Dict, output_dir: Path) -> Dict[str, Path]:
    """
    Write outlet.geojson and, when a network was built, subwta.tif, netw.tsv and channels.gpkg.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    pointer: Grid = result["pointer"]
    paths: Dict[str, Path] = {}

    outlet_path = output_dir / "outlet.geojson"
    outlet_to_point(result["outlet"], pointer).to_file(outlet_path, driver="GeoJSON")
    paths["outlet"] = outlet_path

    if "tree" not in result:
        return paths

    labels = pointer.like(result["labels"].astype(np.int32), LABEL_NODATA)
    paths["subwta"] = write_grid(output_dir / "subwta.tif", labels, dtype="int32")
    paths["netw"] = write_link_table(result["tree"], output_dir / "netw.tsv")

    channels_path = output_dir / "channels.gpkg"
    links_to_lines(result["tree"], pointer).to_file(channels_path, layer="channels", driver="GPKG")
    paths["channels"] = channels_path

    LOG.info("Wrote outputs: %s", ", ".join(str(p) for p in paths.values()))
    return paths
