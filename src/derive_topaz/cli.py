from __future__ import annotations

import argparse
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from derive_topaz.common.errors import InvalidInput
from derive_topaz.common.logging import configure_logging
from derive_topaz.common.metadata import write_metadata
from derive_topaz.process.hydro import derive_topaz, write_topaz_outputs
from derive_topaz.process.outlet import MAX_CANDIDATES, RULES

LOG = logging.getLogger(__name__)


def _parse_pair(raw: str, cast):
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    if len(parts) != 2:
        raise argparse.ArgumentTypeError(f"Expected two comma-separated values; got '{raw}'.")
    try:
        return cast(parts[0]), cast(parts[1])
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid value pair '{raw}': {exc}") from None


def _row_col(raw: str) -> tuple[int, int]:
    return _parse_pair(raw, int)


def _lng_lat(raw: str) -> tuple[float, float]:
    return _parse_pair(raw, float)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Locate a watershed outlet and build TOPAZ channel links and hillslope labels from D8 rasters."
    )
    parser.add_argument("-d8", required=True, type=Path, help="D8 flow pointer raster")
    parser.add_argument("-streams", required=True, type=Path, help="Stream raster (cells > 0 are channels)")
    parser.add_argument("-output", required=True, type=Path, help="Output directory")

    parser.add_argument("--watershed", dest="watershed", type=Path, default=None, help="Watershed mask raster (cells > 0 inside)")
    parser.add_argument("--dem", dest="dem", type=Path, default=None, help="DEM for link elevations and pointer scheme detection")
    parser.add_argument("--order", dest="order", type=Path, default=None, help="Stream order raster; Strahler order is computed when omitted")
    parser.add_argument("--chnjnt", dest="chnjnt", type=Path, default=None, help="Junction class raster checked against computed inflows")
    outlet = parser.add_mutually_exclusive_group()
    outlet.add_argument("--outlet-row-col", dest="outlet_row_col", type=_row_col, default=None, help="Requested outlet start as row,col")
    outlet.add_argument("--outlet-lng-lat", dest="outlet_lng_lat", type=_lng_lat, default=None, help="Requested outlet start as lon,lat")
    parser.add_argument("--pointer-scheme", dest="pointer_scheme", choices=("auto", "native", "esri"), default="auto")
    parser.add_argument("--outlet-rule", dest="outlet_rule", choices=RULES, default="junction", help="'boundary' keeps the legacy first-boundary-stream rule")
    parser.add_argument("--max-candidates", dest="max_candidates", type=int, default=MAX_CANDIDATES)
    parser.add_argument("--find-outlet-only", dest="find_outlet_only", action="store_true")
    parser.add_argument("--verbose", dest="verbose", action="store_true")

    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> None:
    output_dir = args.output
    output_dir.mkdir(parents=True, exist_ok=True)
    log_path = configure_logging(output_dir, args.verbose)
    started = datetime.utcnow().isoformat() + "Z"

    param_dict = {}
    for key, value in vars(args).items():
        param_dict[key] = str(value) if isinstance(value, Path) else value

    result = derive_topaz(
        d8=args.d8,
        streams=args.streams,
        watershed=args.watershed,
        dem=args.dem,
        order=args.order,
        chnjnt=args.chnjnt,
        outlet_row_col=args.outlet_row_col,
        outlet_lng_lat=args.outlet_lng_lat,
        pointer_scheme=args.pointer_scheme,
        outlet_rule=args.outlet_rule,
        max_candidates=args.max_candidates,
        find_outlet_only=args.find_outlet_only,
    )
    paths = write_topaz_outputs(result, output_dir)

    tree = result.get("tree")
    metadata = {
        "started": started,
        "parameters": param_dict,
        "pointer_scheme": result["scheme"],
        "outlet": result["outlet"].to_properties(),
        "network": {
            "links": len(tree),
            "headwaters": len(tree.headwaters()),
            "max_topaz_id": max(link.topaz_id for link in tree),
        }
        if tree is not None
        else None,
        "outputs": {"log": str(log_path), **{key: str(path) for key, path in paths.items()}},
    }
    write_metadata(output_dir, metadata)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    try:
        run(args)
    except InvalidInput as exc:
        LOG.error("%s", exc)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
