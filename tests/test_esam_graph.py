"""Tests for key management, graph synchronization and optimization."""

import gtsam
import numpy as np
import pytest

from conftest import ODOM_VARIANCE, drive, translation
from esam_slam.core.esam import ESAM
from esam_slam.core.spatial_graph import ItemNotFoundError, UnknownFrameError
from esam_slam.core.types import FactorKind, PoseItem, PoseWithCovariance, Symbol


class TestKeys:
    """Pose and landmark counters."""

    def test_initial_state(self, esam: ESAM):
        assert esam.pose_idx == 0
        assert esam.landmark_idx == 0
        assert esam.current_pose_id() == 'x0'
        assert esam.current_landmark_id() == 'l0'

    def test_pose_counter_after_deltas(self, esam: ESAM):
        drive(esam, [translation(x=1.0)] * 4)
        assert esam.pose_idx == 4
        for i in range(5):
            assert f'x{i}' in esam.spatial
        assert 'x5' not in esam.spatial

    def test_delta_returns_new_symbol(self, esam: ESAM):
        assert esam.add_delta_pose_factor(0.1, translation(x=1.0), ODOM_VARIANCE) == Symbol('x', 1)
        assert esam.current_pose_id() == 'x1'

    def test_custom_categories(self):
        esam = ESAM(gtsam.Pose3(), 1e-4 * np.ones(6), pose_key='p', landmark_key='m')
        esam.add_delta_pose_factor(0.0, translation(x=1.0), ODOM_VARIANCE)
        assert esam.current_pose_id() == 'p1'
        assert esam.add_landmark_factor(Symbol('p', 1), 0.0, [1.0, 0.0, 0.0], [0.01] * 3) == Symbol('m', 0)

    def test_same_categories_rejected(self):
        with pytest.raises(ValueError):
            ESAM(gtsam.Pose3(), 1e-4 * np.ones(6), pose_key='x', landmark_key='x')


class TestPrior:
    """Prior on the first pose."""

    def test_full_covariance_reads_back(self):
        rng = np.random.default_rng(3)
        a = rng.normal(size=(6, 6))
        cov = 1e-3 * (a @ a.T + 6 * np.eye(6))
        esam = ESAM(gtsam.Pose3(), cov)
        np.testing.assert_allclose(esam.get_transform_pose('x0').cov, cov)

    def test_diagonal_covariance_reads_back(self, esam: ESAM):
        np.testing.assert_allclose(esam.get_transform_pose('x0').cov, 1e-4 * np.eye(6))

    def test_pose_with_covariance(self):
        pose = gtsam.Pose3(gtsam.Rot3.Yaw(0.5), gtsam.Point3(1.0, 2.0, 3.0))
        esam = ESAM(PoseWithCovariance(pose, 1e-2 * np.eye(6)))
        data = esam.get_transform_pose('x0')
        assert data.pose.equals(pose, 1e-12)
        np.testing.assert_allclose(data.cov, 1e-2 * np.eye(6))

    def test_single_prior_factor(self, esam: ESAM):
        assert len(esam.estimation) == 1
        assert esam.estimation.count(FactorKind.PRIOR) == 1


class TestSynchronizer:
    """Every factor is mirrored by a transform edge, or nothing is added."""

    def test_relative_factor_mirrored(self, esam: ESAM):
        drive(esam, [translation(x=1.0)] * 3)
        assert esam.estimation.count(FactorKind.BETWEEN_POSE) == 3
        assert esam.spatial.num_transforms() == 3
        for i in range(3):
            tf = esam.spatial.get_transform(f'x{i}', f'x{i + 1}')
            assert tf.time == float(i + 1)
            np.testing.assert_allclose(tf.pose.translation(), [1.0, 0.0, 0.0])

    def test_initial_estimate_composes_delta(self, esam: ESAM):
        drive(esam, [translation(x=1.0), gtsam.Pose3(gtsam.Rot3.Yaw(np.pi / 2), gtsam.Point3(1.0, 0.0, 0.0))])
        drive(esam, [translation(x=1.0)])
        np.testing.assert_allclose(esam.get_transform_pose('x3').translation, [2.0, 1.0, 0.0], atol=1e-9)

    def test_explicit_pose_estimate(self, esam: ESAM):
        estimate = PoseWithCovariance(translation(x=0.9), 1e-2 * np.eye(6))
        esam.add_delta_pose_factor(0.0, translation(x=1.0), ODOM_VARIANCE, estimate)
        np.testing.assert_allclose(esam.get_transform_pose('x1').translation, [0.9, 0.0, 0.0])

    def test_unknown_target_without_value(self, esam: ESAM):
        with pytest.raises(UnknownFrameError):
            esam.insert_pose_factor(Symbol('x', 0), Symbol('x', 7), 0.0, translation(x=1.0), ODOM_VARIANCE)
        assert len(esam.estimation) == 1
        assert esam.spatial.num_transforms() == 0
        assert 'x7' not in esam.spatial
        assert esam.pose_idx == 0

    def test_unknown_source(self, esam: ESAM):
        estimate = PoseWithCovariance(translation(x=1.0))
        with pytest.raises(UnknownFrameError):
            esam.insert_pose_factor(Symbol('x', 9), Symbol('x', 1), 0.0, translation(x=1.0),
                                    ODOM_VARIANCE, estimate)
        assert len(esam.estimation) == 1
        assert 'x1' not in esam.spatial

    def test_malformed_uncertainty(self, esam: ESAM):
        with pytest.raises(ValueError):
            esam.add_delta_pose_factor(0.0, translation(x=1.0), np.ones(5))
        assert esam.pose_idx == 0
        assert len(esam.estimation) == 1
        assert len(esam.spatial) == 1

    def test_full_covariance_delta(self, esam: ESAM):
        cov = 1e-3 * np.eye(6)
        cov[0, 1] = cov[1, 0] = 5e-4
        esam.add_delta_pose_factor(0.0, translation(x=1.0), cov)
        np.testing.assert_allclose(esam.spatial.get_transform('x0', 'x1').cov, cov)

    def test_landmark_on_unknown_pose(self, esam: ESAM):
        with pytest.raises(UnknownFrameError):
            esam.add_landmark_factor(Symbol('x', 3), 0.0, [1.0, 0.0, 0.0], [0.01] * 3)
        assert esam.landmark_idx == 0
        assert len(esam.estimation) == 1

    def test_observation_of_unknown_landmark(self, esam: ESAM):
        with pytest.raises(UnknownFrameError):
            esam.insert_landmark_factor(Symbol('x', 0), Symbol('l', 0), 0.0, [1.0, 0.0, 0.0], [0.01] * 3)
        assert 'l0' not in esam.spatial
        assert len(esam.estimation) == 1


class TestLandmarks:
    """Landmark observations."""

    def test_landmark_factor(self, esam: ESAM):
        drive(esam, [translation(x=1.0)])
        landmark = esam.add_landmark_factor(Symbol('x', 1), 0.0, [1.0, 2.0, 0.0], [0.01] * 3)
        assert landmark == Symbol('l', 0)
        assert esam.landmark_idx == 1
        np.testing.assert_allclose(esam.get_landmark('l0'), [2.0, 2.0, 0.0])
        assert esam.spatial.has_transform('x1', 'l0')
        assert esam.num_landmark_factors() == 1

    def test_landmark_reobserved(self, esam: ESAM):
        drive(esam, [translation(x=1.0)])
        esam.add_landmark_factor(Symbol('x', 0), 0.0, [2.0, 0.0, 0.0], [0.01] * 3)
        esam.insert_landmark_factor(Symbol('x', 1), Symbol('l', 0), 0.0, [1.0, 0.0, 0.0], [0.01] * 3)
        assert esam.landmark_idx == 1
        assert esam.num_landmark_factors() == 2
        assert esam.optimize()
        np.testing.assert_allclose(esam.get_landmark('l0'), [2.0, 0.0, 0.0], atol=1e-6)

    def test_bearing_range(self, esam: ESAM):
        landmark = esam.add_bearing_range_factor(Symbol('x', 0), 0.0, np.pi / 2, 2.0, [1e-4, 1e-4])
        np.testing.assert_allclose(esam.get_landmark(landmark), [0.0, 2.0, 0.0], atol=1e-12)
        tf = esam.spatial.get_transform('x0', 'l0')
        np.testing.assert_allclose(tf.pose.translation(), [0.0, 2.0, 0.0], atol=1e-12)
        assert tf.cov[0, 0] == 1e-4

        # bearing-range leaves the landmark height free
        esam.insert_landmark_factor(Symbol('x', 0), landmark, 0.0, [0.0, 2.0, 0.0], [0.01] * 3)
        assert esam.optimize()
        np.testing.assert_allclose(esam.get_landmark(landmark), [0.0, 2.0, 0.0], atol=1e-6)
        assert esam.estimation.count(FactorKind.BEARING_RANGE) == 1

    def test_insert_landmark_value(self, esam: ESAM):
        esam.add_landmark_factor(Symbol('x', 0), 0.0, [1.0, 0.0, 0.0], [0.01] * 3)
        assert esam.insert_landmark_value('l0', [1.5, 0.0, 0.0])
        np.testing.assert_allclose(esam.get_landmark('l0'), [1.5, 0.0, 0.0])
        assert not esam.insert_landmark_value('l4', [0.0, 0.0, 0.0])


class TestOptimize:
    """Optimize and write back."""

    def test_straight_line(self, esam: ESAM):
        drive(esam, [translation(x=1.0)] * 5)
        assert esam.optimize()
        assert abs(esam.get_transform_pose('x5').translation[0] - 5.0) < 1e-2
        assert esam.num_pose_factors() == 6
        assert esam.num_landmark_factors() == 0

    def test_covariance_written_back(self, esam: ESAM):
        drive(esam, [translation(x=1.0)] * 2)
        assert esam.optimize()
        cov = esam.get_transform_pose('x2').cov
        assert cov.shape == (6, 6)
        assert np.all(np.isfinite(cov))
        # uncertainty grows along the chain
        assert cov[0, 0] > esam.get_transform_pose('x1').cov[0, 0]
        np.testing.assert_allclose(esam.marginal_covariance('x2'), cov)

    def test_pulls_toward_measurements(self, esam: ESAM):
        drive(esam, [translation(x=1.0)])
        esam.insert_pose_value('x1', PoseWithCovariance(translation(x=3.0), np.eye(6)))
        assert esam.optimize()
        assert abs(esam.get_transform_pose('x1').translation[0] - 1.0) < 1e-3

    def test_missing_value_aborts(self, esam: ESAM):
        drive(esam, [translation(x=1.0)])
        esam.spatial.remove_item('x1', PoseItem)
        assert not esam.optimize()
        assert esam.optimizer.marginals is None

    def test_underconstrained_landmark_fails(self, esam: ESAM, caplog):
        landmark = esam.add_bearing_range_factor(Symbol('x', 0), 0.0, 0.5, 2.0, [1e-4, 1e-4])
        before = esam.get_landmark(landmark).copy()
        # bearing-range leaves the landmark height free
        assert not esam.optimize()
        assert esam.optimizer.marginals is None
        np.testing.assert_allclose(esam.get_landmark(landmark), before)
        assert 'optimize failed' in caplog.text

    def test_marginals_before_optimize(self, esam: ESAM):
        with pytest.raises(RuntimeError):
            esam.marginal_covariance('x0')

    def test_print_marginals(self, esam: ESAM, caplog):
        caplog.set_level('INFO')
        drive(esam, [translation(x=1.0)])
        esam.optimize()
        esam.print_marginals()
        assert 'x1 covariance' in caplog.text

    def test_print_factor_graph(self, esam: ESAM, caplog):
        caplog.set_level('INFO')
        drive(esam, [translation(x=1.0)])
        esam.print_factor_graph('graph')
        assert 'graph: 2 factors' in caplog.text
        assert 'between_pose(x0, x1)' in caplog.text


class TestQueries:
    """Read access to estimates."""

    def test_get_last_pose_value_and_id(self, esam: ESAM):
        drive(esam, [translation(x=1.0)])
        name, data = esam.get_last_pose_value_and_id()
        assert name == 'x1'
        np.testing.assert_allclose(data.translation, [1.0, 0.0, 0.0])

    def test_get_transform_pose_unknown(self, esam: ESAM):
        assert esam.get_transform_pose('x3') is None

    @pytest.mark.parametrize('name', ['world', 'map', 'x', ''])
    def test_unparsable_frame_names(self, esam: ESAM, name):
        assert esam.get_transform_pose(name) is None
        assert esam.get_landmark(name) is None
        assert esam.get_rbs_pose(name) is None
        assert not esam.insert_pose_value(name, PoseWithCovariance(gtsam.Pose3(), np.eye(6)))
        assert not esam.insert_landmark_value(name, [0.0, 0.0, 0.0])
        with pytest.raises(UnknownFrameError):
            esam.get_point_cloud(name)

    def test_rbs_poses(self, esam: ESAM):
        drive(esam, [translation(x=1.0)] * 2)
        poses = esam.get_rbs_poses()
        assert [p.source_frame for p in poses] == ['x0', 'x1', 'x2']
        np.testing.assert_allclose(poses[2].position, [2.0, 0.0, 0.0])
        np.testing.assert_allclose(poses[2].orientation, [1.0, 0.0, 0.0, 0.0])
        assert poses[0].cov_position.shape == (3, 3)

    def test_point_cloud_missing(self, esam: ESAM):
        with pytest.raises(ItemNotFoundError):
            esam.get_point_cloud('x0')

    def test_export(self, esam: ESAM, tmp_path):
        drive(esam, [translation(x=1.0)])
        assert esam.save_factor_graph(str(tmp_path / 'factors.dot'))
        assert (tmp_path / 'factors.dot').exists()
        esam.graph_viz(str(tmp_path / 'spatial.dot'))
        assert '"x0" -> "x1"' in (tmp_path / 'spatial.dot').read_text()
