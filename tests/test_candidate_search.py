"""Tests for bounding volumes and the spatial candidate search."""

import logging

import gtsam
import numpy as np

from conftest import drive, translation
from esam_slam.core.esam import ESAM
from esam_slam.core.types import AlignedBoundingBox, PoseItem, PoseWithCovariance, Symbol


def x(i: int) -> Symbol:
    return Symbol('x', i)


class TestBoundingVolume:
    """Test suite for compute_bounding_volume."""

    def test_none_with_only_prior(self, esam: ESAM):
        assert esam.compute_bounding_volume(x(0), x(0)) is None

    def test_attached_to_previous_frame(self, esam: ESAM):
        drive(esam, [translation(x=1.0)])
        assert esam.compute_bounding_volume(x(0), x(1)) == x(0)
        assert esam.spatial.get_item(x(0), PoseItem).boundary is not None
        assert esam.spatial.get_item(x(1), PoseItem).boundary is None

    def test_fixed_margins(self, esam: ESAM):
        drive(esam, [translation(x=1.0)])
        esam.compute_bounding_volume(x(0), x(1))
        box = esam.spatial.get_item(x(0), PoseItem).boundary
        np.testing.assert_allclose(box.min, [-0.05, -0.4, -1.0])
        np.testing.assert_allclose(box.max, [1.05, 0.4, 1.0])

    def test_spans_both_poses_in_any_direction(self, esam: ESAM):
        drive(esam, [translation(x=-2.0, y=1.0)])
        esam.compute_bounding_volume(x(0), x(1))
        box = esam.spatial.get_item(x(0), PoseItem).boundary
        np.testing.assert_allclose(box.min, [-2.05, -0.4, -1.0])
        np.testing.assert_allclose(box.max, [0.05, 1.4, 1.0])

    def test_statistical_margins(self):
        esam = ESAM(gtsam.Pose3(), 1e-4 * np.ones(6), use_statistical_margins=True)
        estimate = PoseWithCovariance(translation(x=1.0), 4e-4 * np.eye(6))
        esam.add_delta_pose_factor(0.0, translation(x=1.0), 1e-3 * np.ones(6), estimate)
        esam.compute_bounding_volume(x(0), x(1))
        box = esam.spatial.get_item(x(0), PoseItem).boundary
        np.testing.assert_allclose(box.min, [-0.01, -0.02, -0.02])
        np.testing.assert_allclose(box.max, [1.02, 0.02, 0.02])

    def test_unknown_frame(self, esam: ESAM):
        drive(esam, [translation(x=1.0)])
        assert esam.compute_bounding_volume(x(0), x(5)) is None


class TestFindCandidates:
    """Test suite for find_candidates and containment."""

    def test_never_self(self, esam: ESAM):
        drive(esam, [gtsam.Pose3()] * 3)
        frame = esam.compute_bounding_volume(x(2), x(3))
        candidates = esam.find_candidates(frame)
        assert frame not in candidates
        assert candidates == [x(0), x(1), x(3)]

    def test_none_container(self, esam: ESAM):
        assert esam.find_candidates(None) == []

    def test_only_contained_poses(self, esam: ESAM):
        drive(esam, [translation(x=1.0)] * 4)
        frame = esam.compute_bounding_volume(x(1), x(2))
        assert esam.find_candidates(frame) == [x(2)]

    def test_center_of_earlier_box(self, esam: ESAM):
        drive(esam, [translation(x=1.0), translation(y=5.0)])
        around_x2 = AlignedBoundingBox(np.array([0.9, 4.9, -0.1]), np.array([1.1, 5.1, 0.1]))
        esam.spatial.get_item(x(2), PoseItem).boundary = around_x2
        # x0 lies at the origin, but its box is centered on x2
        esam.spatial.get_item(x(0), PoseItem).boundary = around_x2
        assert esam.contains(x(2), x(0))
        assert esam.find_candidates(x(2)) == [x(0)]

    def test_center_of_later_box_ignored(self, esam: ESAM):
        drive(esam, [translation(x=1.0), translation(y=5.0)])
        around_origin = AlignedBoundingBox(np.full(3, -0.1), np.full(3, 0.1))
        esam.spatial.get_item(x(0), PoseItem).boundary = around_origin
        esam.spatial.get_item(x(2), PoseItem).boundary = around_origin
        assert not esam.contains(x(0), x(2))
        assert esam.find_candidates(x(0)) == []

    def test_intersects(self, esam: ESAM):
        drive(esam, [translation(x=1.0)] * 2)
        esam.compute_bounding_volume(x(0), x(1))
        assert not esam.intersects(x(0), x(1))
        esam.compute_bounding_volume(x(1), x(2))
        assert esam.intersects(x(0), x(1))

    def test_probable_loop_closure_logged(self, esam: ESAM, caplog):
        caplog.set_level(logging.INFO)
        drive(esam, [gtsam.Pose3()] * 12)
        frame = esam.compute_bounding_volume(x(11), x(12))
        assert x(0) in esam.find_candidates(frame)
        messages = [record.getMessage() for record in caplog.records]
        assert 'probable loop closure between x11 and x0' in messages
        assert 'probable loop closure between x11 and x1' not in messages


class TestSearchFrontier:
    """compute_keypoints advances the frontier with a one frame lag."""

    def test_frontier_lags_one_frame(self, esam: ESAM):
        assert esam.compute_keypoints() is None
        assert esam.get_pose_correspondences() == (-1, [])

        drive(esam, [translation(x=1.0)])
        assert esam.compute_keypoints() == x(0)
        assert esam.get_pose_correspondences() == (-1, [])

        esam.add_delta_pose_factor(2.0, translation(x=1.0), 1e-3 * np.ones(6))
        assert esam.compute_keypoints() == x(1)
        assert esam.get_pose_correspondences() == (0, [1])

    def test_detect_landmarks_without_frontier(self, esam: ESAM):
        assert esam.detect_landmarks(0.0) == 0
