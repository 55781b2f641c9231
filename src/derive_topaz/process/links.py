"""
Tabular link export.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

from derive_topaz.process.network import ChannelTree

LOG = logging.getLogger(__name__)

LINK_COLUMNS = [
    "id",
    "topaz_id",
    "ds_row",
    "ds_col",
    "us_row",
    "us_col",
    "inflow0_id",
    "inflow1_id",
    "length_m",
    "ds_z",
    "us_z",
    "drop_m",
    "order",
    "areaup",
    "is_headwater",
    "is_outlet",
]


def links_to_frame(tree: ChannelTree) -> pd.DataFrame:
    records = [
        {
            "id": link.id,
            "topaz_id": link.topaz_id,
            "ds_row": link.ds[0],
            "ds_col": link.ds[1],
            "us_row": link.us[0],
            "us_col": link.us[1],
            "inflow0_id": link.inflow0_id,
            "inflow1_id": link.inflow1_id,
            "length_m": link.length_m,
            "ds_z": link.ds_z,
            "us_z": link.us_z,
            "drop_m": link.drop_m,
            "order": link.order,
            "areaup": link.areaup,
            "is_headwater": int(link.is_headwater),
            "is_outlet": int(link.is_outlet),
        }
        for link in tree
    ]
    return pd.DataFrame.from_records(records, columns=LINK_COLUMNS)


def write_link_table(tree: ChannelTree, path: Path) -> Path:
    """
    Write one tab-separated row per link, floats with 3 decimals.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame = links_to_frame(tree)
    frame.to_csv(path, sep="\t", index=False, float_format="%.3f", na_rep="nan")
    LOG.info("Wrote %d links to %s", len(frame), path)
    return path
