import numpy as np
import pandas as pd
import pytest

from derive_topaz.process.hillslopes import assign_link_areas, label_hillslopes
from derive_topaz.process.links import LINK_COLUMNS, links_to_frame, write_link_table
from derive_topaz.process.network import build_channel_network
from derive_topaz.process.topaz import assign_topaz_ids


@pytest.fixture
def y_tree(y_flow, y_streams, y_dem):
    tree = assign_topaz_ids(build_channel_network(y_flow, y_streams, (6, 3), dem=y_dem), y_flow)
    labels = label_hillslopes(tree, y_flow, np.ones((7, 7), dtype=bool))
    return assign_link_areas(tree, labels, 100.0)


def test_frame_columns_and_rows(y_tree):
    frame = links_to_frame(y_tree)
    assert list(frame.columns) == LINK_COLUMNS
    assert frame["topaz_id"].tolist() == [24, 44, 34]
    assert frame["is_outlet"].tolist() == [1, 0, 0]
    assert frame["is_headwater"].tolist() == [0, 1, 1]
    outlet = frame.iloc[0]
    assert (outlet["ds_row"], outlet["ds_col"], outlet["us_row"], outlet["us_col"]) == (6, 3, 3, 3)
    assert (outlet["inflow0_id"], outlet["inflow1_id"]) == (1, 2)
    assert frame.iloc[1]["inflow0_id"] == -1


def test_written_table(y_tree, tmp_path):
    path = write_link_table(y_tree, tmp_path / "netw.tsv")
    text = path.read_text()
    header = text.splitlines()[0]
    assert header.split("\t") == LINK_COLUMNS
    assert "28.284\t" in text

    table = pd.read_csv(path, sep="\t")
    assert len(table) == 3
    assert table["areaup"].tolist() == [4900.0, 900.0, 900.0]
    assert table.loc[0, "drop_m"] == pytest.approx(3.0)
