import numpy as np
import pytest

from derive_topaz.common.errors import InvalidInput
from derive_topaz.process.d8 import FlowDirections, encode
from derive_topaz.process.hillslopes import (
    CHANNEL,
    HEADWATER,
    LABEL_NODATA,
    RESIDUAL,
    SIDE_BUFFER,
    HillslopeLabeler,
    assign_link_areas,
    label_hillslopes,
    side_label,
)
from derive_topaz.process.network import build_channel_network
from derive_topaz.process.topaz import assign_topaz_ids

from conftest import Y_LABELS


@pytest.fixture
def y_tree(y_flow, y_streams):
    return assign_topaz_ids(build_channel_network(y_flow, y_streams, (6, 3)), y_flow)


def test_side_label():
    # flowing south: inflow from the east is left, from the west is right
    assert side_label(24, (1, 0), (0, -1)) == 22
    assert side_label(24, (1, 0), (0, 1)) == 23
    assert side_label(24, (1, 0), (1, 0)) == 22


def test_y_labels(y_tree, y_flow):
    labels = label_hillslopes(y_tree, y_flow, np.ones((7, 7), dtype=bool))
    assert labels.dtype == np.int32
    np.testing.assert_array_equal(labels, np.array(Y_LABELS))


def test_hillslope_labels_belong_to_channels(y_tree, y_flow):
    labels = label_hillslopes(y_tree, y_flow, np.ones((7, 7), dtype=bool))
    channel_ids = {link.topaz_id for link in y_tree}
    for value in np.unique(labels):
        assert value - value % 10 + 4 in channel_ids
        assert value % 10 in (1, 2, 3, 4)


def test_headwater_labels_only_on_headwater_links(y_tree, y_flow):
    labels = label_hillslopes(y_tree, y_flow, np.ones((7, 7), dtype=bool))
    assert not np.any(labels == 21)


def labels_of(labeler, phase):
    return labeler.labels[labeler.phase == phase]


def test_each_cell_written_by_one_phase(y_tree, y_flow):
    labeler = HillslopeLabeler(y_tree, y_flow, np.ones((7, 7), dtype=bool))
    labeler.run()
    assert (labeler.phase > 0).all()
    for link in y_tree:
        for cell in link.cells:
            assert labeler.phase[cell] == CHANNEL
    assert labeler.phase[0, 0] == HEADWATER
    assert labeler.phase[1, 2] == SIDE_BUFFER
    assert labeler.phase[2, 0] == RESIDUAL
    # headwater BFS never reaches cells claimed by a side buffer
    assert set(np.unique(labels_of(labeler, HEADWATER))) == {31, 41}


def test_relabelling_is_refused(y_tree, y_flow):
    labeler = HillslopeLabeler(y_tree, y_flow, np.ones((7, 7), dtype=bool))
    labeler.stamp_channels()
    with pytest.raises(InvalidInput, match="already labelled"):
        labeler._assign((3, 3), 21, SIDE_BUFFER)


def test_cells_outside_mask_stay_nodata(y_tree, y_flow):
    mask = np.ones((7, 7), dtype=bool)
    mask[0, :] = False
    labels = label_hillslopes(y_tree, y_flow, mask)
    assert (labels[0] == LABEL_NODATA).all()
    assert labels[1, 0] == 31


def test_residual_trace_leaving_mask_is_fatal(y_pointer, y_streams):
    y_pointer.data[0, 0] = encode((-1, -1))
    flow = FlowDirections(y_pointer)
    tree = assign_topaz_ids(build_channel_network(flow, y_streams, (6, 3)), flow)
    with pytest.raises(InvalidInput, match="leaves the watershed"):
        label_hillslopes(tree, flow, np.ones((7, 7), dtype=bool))


def test_link_areas_accumulate(y_tree, y_flow):
    labels = label_hillslopes(y_tree, y_flow, np.ones((7, 7), dtype=bool))
    assign_link_areas(y_tree, labels, 100.0)
    assert [link.areaup for link in y_tree] == [4900.0, 900.0, 900.0]


def test_undecodable_channel_pointer_is_fatal(y_pointer, y_streams):
    flow = FlowDirections(y_pointer)
    tree = assign_topaz_ids(build_channel_network(flow, y_streams, (6, 3)), flow)
    y_pointer.data[5, 3] = 0
    labeler = HillslopeLabeler(tree, FlowDirections(y_pointer), np.ones((7, 7), dtype=bool))
    labeler.stamp_channels()
    labeler.fill_headwaters()
    with pytest.raises(InvalidInput, match="row 5, col 3 has no flow direction"):
        labeler.label_side_buffers()
