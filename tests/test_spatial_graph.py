"""Tests for the spatial graph store."""

import gtsam
import numpy as np
import pytest

from esam_slam.core.spatial_graph import ItemNotFoundError, SpatialGraph, UnknownFrameError
from esam_slam.core.types import LandmarkItem, PoseItem, PoseWithCovariance, Symbol, Transform


@pytest.fixture
def graph() -> SpatialGraph:
    graph = SpatialGraph()
    graph.add_frame(Symbol('x', 0))
    graph.add_frame('x1')
    graph.set_item('x0', PoseItem(PoseWithCovariance(gtsam.Pose3())))
    return graph


class TestSpatialGraph:
    """Test suite for SpatialGraph."""

    def test_frames_by_symbol_or_name(self, graph: SpatialGraph):
        assert Symbol('x', 1) in graph
        assert 'x0' in graph
        assert 'x2' not in graph
        assert len(graph) == 2

    def test_items(self, graph: SpatialGraph):
        assert graph.has_item('x0', PoseItem)
        assert graph.item_count('x0', PoseItem) == 1
        assert graph.item_count('x1', PoseItem) == 0
        assert graph.find_item('x1', PoseItem) is None
        assert list(graph.frames_with(PoseItem)) == ['x0']

    def test_set_item_replaces_same_type(self, graph: SpatialGraph):
        graph.set_item('x1', LandmarkItem(np.zeros(3)))
        graph.set_item('x1', LandmarkItem(np.ones(3)))
        np.testing.assert_allclose(graph.get_item('x1', LandmarkItem).data, np.ones(3))

    def test_missing_item(self, graph: SpatialGraph):
        with pytest.raises(ItemNotFoundError):
            graph.get_item('x1', PoseItem)

    def test_unknown_frame(self, graph: SpatialGraph):
        with pytest.raises(UnknownFrameError):
            graph.get_item('x9', PoseItem)
        with pytest.raises(UnknownFrameError):
            graph.set_item('x9', PoseItem(PoseWithCovariance(gtsam.Pose3())))

    def test_errors_are_key_errors(self, graph: SpatialGraph):
        with pytest.raises(KeyError):
            graph.get_item('x9', PoseItem)

    def test_transforms(self, graph: SpatialGraph):
        tf = Transform(1.5, gtsam.Pose3(), np.eye(6))
        graph.add_transform('x0', 'x1', tf)
        assert graph.has_transform('x0', 'x1')
        assert not graph.has_transform('x1', 'x0')
        assert graph.get_transform('x0', 'x1').time == 1.5
        assert graph.num_transforms() == 1

    def test_transform_update(self, graph: SpatialGraph):
        graph.add_transform('x0', 'x1', Transform(1.0, gtsam.Pose3(), np.eye(6)))
        graph.add_transform('x0', 'x1', Transform(2.0, gtsam.Pose3(), np.eye(6)))
        assert graph.num_transforms() == 1
        assert graph.get_transform('x0', 'x1').time == 2.0

    def test_transform_to_unknown_frame(self, graph: SpatialGraph):
        with pytest.raises(UnknownFrameError):
            graph.add_transform('x0', 'x5', Transform(0.0, gtsam.Pose3(), np.eye(6)))
        assert graph.num_transforms() == 0

    def test_graphviz(self, graph: SpatialGraph, tmp_path):
        graph.add_transform('x0', 'x1', Transform(0.0, gtsam.Pose3(), np.eye(6)))
        dot = graph.to_dot()
        assert dot.startswith('digraph')
        assert '"x0" -> "x1"' in dot
        assert 'PoseItem' in dot

        filename = tmp_path / 'graph.dot'
        graph.write_graphviz(str(filename))
        assert filename.read_text() == dot
