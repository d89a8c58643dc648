"""
ESAM graph manager

Owns the estimation graph, the spatial graph and the components working on
them, and exposes the public surface used by the ROS node:

    esam = ESAM(gtsam.Pose3(), 1e-4 * np.ones(6))
    esam.push_point_cloud(cloud)
    esam.add_delta_pose_factor(time, delta, variances)
    esam.compute_keypoints()
    esam.detect_landmarks(time)
    esam.optimize()
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple, Union

import gtsam
import numpy as np

from esam_slam.core.candidate_search import CandidateSearch
from esam_slam.core.correspondence import CorrespondenceEngine
from esam_slam.core.estimation_graph import EstimationGraph
from esam_slam.core.feature_extraction import FeatureExtraction
from esam_slam.core.keys import KeyManager
from esam_slam.core.optimizer import OptimizerDriver
from esam_slam.core.spatial_graph import SpatialGraph, SpatialGraphError, UnknownFrameError
from esam_slam.core.synchronizer import GraphSynchronizer
from esam_slam.core.types import (BilateralFilterParams, DescriptorItem, FactorKind, FPFHFeatureParams,
                                  KeypointItem, LandmarkItem, OutlierRemovalParams, PointCloud,
                                  PointCloudItem, PoseItem, PoseWithCovariance, RigidBodyState,
                                  SIFTKeypointParams, Symbol)
from esam_slam.cpp import pcl
from esam_slam.utils.conversions import as_covariance, propagate_covariance, quaternion
from esam_slam.utils.io import write_ply

FrameId = Union[Symbol, str]


class ESAM:
    """Incremental pose-landmark graph with spatial data association."""

    def __init__(
        self,
        pose: Union[gtsam.Pose3, PoseWithCovariance] = None,
        uncertainty=None,
        pose_key: str = "x",
        landmark_key: str = "l",
        downsample_size: float = 0.01,
        bfilter: Optional[BilateralFilterParams] = None,
        outliers: Optional[OutlierRemovalParams] = None,
        keypoint: Optional[SIFTKeypointParams] = None,
        feature: Optional[FPFHFeatureParams] = None,
        landmark_var: Sequence[float] = (0.01, 0.01, 0.01),
        match_percentage: float = 1.0,
        bbox_margins: Sequence[float] = (0.05, 0.4, 1.0),
        use_statistical_margins: bool = False,
        relative_error_tol: float = 1e-5,
        max_iterations: int = 100,
        logger=None
    ):
        """Create the graph with a prior on the first pose.

        Args:
            pose: initial pose (identity by default); a PoseWithCovariance
                also provides the prior covariance
            uncertainty: prior variances (6,) or covariance (6, 6), ordered
                [translation, rotation]
            pose_key: category character of pose symbols
            landmark_key: category character of landmark symbols
            downsample_size: voxel size of incoming clouds
            bfilter: bilateral filter of organized clouds
            outliers: outlier removal of incoming clouds
            keypoint: SIFT keypoint parameters
            feature: normal and FPFH radii
            landmark_var: per-axis variance of landmark observations
            match_percentage: score gate relative to the median match score
            bbox_margins: per-axis bounding box inflation in meters
            use_statistical_margins: inflate boxes by the pose standard deviation
            relative_error_tol: Gauss-Newton relative error tolerance
            max_iterations: Gauss-Newton iteration limit
            logger: ROS or python logger shared by all components
        """
        if logger is not None:
            self.logger = logger
        else:
            self.logger = logging.getLogger('ESAM')
            self.logger.setLevel(logging.INFO)

        if isinstance(pose, PoseWithCovariance):
            uncertainty = pose.cov if uncertainty is None else uncertainty
            pose = pose.pose
        pose = gtsam.Pose3() if pose is None else pose
        uncertainty = 1e-4 * np.ones(6) if uncertainty is None else np.asarray(uncertainty, dtype=float)
        prior_cov = as_covariance(uncertainty)

        self.downsample_size = downsample_size
        self.bfilter = bfilter if bfilter is not None else BilateralFilterParams()
        self.outliers = outliers if outliers is not None else OutlierRemovalParams()

        self.keys = KeyManager(pose_key, landmark_key)
        self.spatial = SpatialGraph()
        self.estimation = EstimationGraph()
        self.synchronizer = GraphSynchronizer(self.spatial, self.estimation)
        self.search = CandidateSearch(self.spatial, self.keys, bbox_margins,
                                      use_statistical_margins, self.logger)
        self.correspondence = CorrespondenceEngine(self.spatial, self.synchronizer, self.keys,
                                                   landmark_var, match_percentage, self.logger)
        self.optimizer = OptimizerDriver(self.spatial, self.estimation, self.keys,
                                         relative_error_tol, max_iterations, self.logger)
        self.features = FeatureExtraction(keypoint, feature, downsample_size, self.logger)

        # Search frontier: candidates found for a frame are searched one frame later
        self.candidate_frame: Optional[Symbol] = None
        self.candidates_to_search: List[Symbol] = []
        self.frame_to_search_landmarks: Optional[Symbol] = None
        self.frames_to_search: List[Symbol] = []

        self.synchronizer.add_prior_constraint(
            self.keys.pose_symbol(0), PoseWithCovariance(pose, prior_cov), uncertainty)

    # Keys

    @property
    def pose_idx(self) -> int:
        return self.keys.pose_idx

    @property
    def landmark_idx(self) -> int:
        return self.keys.landmark_idx

    def current_pose_id(self) -> str:
        return str(self.keys.current_pose)

    def current_landmark_id(self) -> str:
        return str(self.keys.current_landmark)

    def _symbol(self, frame: FrameId) -> Symbol:
        if isinstance(frame, Symbol):
            return frame
        try:
            return Symbol.parse(frame)
        except ValueError:
            raise UnknownFrameError(str(frame)) from None

    # Factors

    def insert_pose_factor(self, symbol1: Symbol, symbol2: Symbol, time: float, delta: gtsam.Pose3,
                           uncertainty, pose: Optional[PoseWithCovariance] = None) -> None:
        """Between-pose factor and mirrored transform; raises on unknown frames."""
        self.synchronizer.add_pose_constraint(symbol1, symbol2, time, delta, uncertainty, pose)

    def add_delta_pose_factor(self, time: float, delta: gtsam.Pose3, uncertainty,
                              pose: Optional[PoseWithCovariance] = None) -> Symbol:
        """Append a new pose related to the newest one by `delta`.

        The new pose starts at `pose` if given, otherwise at the newest
        estimate composed with `delta`.

        Returns:
            symbol of the new pose
        """
        prev = self.keys.current_pose
        curr = self.keys.next_pose_symbol()
        if pose is None:
            prev_data = self.spatial.get_item(prev, PoseItem).data
            delta_cov = as_covariance(uncertainty)
            pose = PoseWithCovariance(prev_data.pose.compose(delta),
                                      propagate_covariance(prev_data.cov, delta, delta_cov))
        self.insert_pose_factor(prev, curr, time, delta, uncertainty, pose)
        self.keys.new_pose_index()
        self.logger.debug(f"added pose {curr}")
        return curr

    def insert_bearing_range_factor(self, pose_symbol: Symbol, landmark_symbol: Symbol, time: float,
                                    bearing: float, range_: float, variance) -> None:
        """Bearing-range factor to an existing landmark."""
        self.synchronizer.add_bearing_range_constraint(pose_symbol, landmark_symbol, time,
                                                       bearing, range_, variance)

    def add_bearing_range_factor(self, pose_symbol: Symbol, time: float, bearing: float,
                                 range_: float, variance) -> Symbol:
        """New landmark observed at (bearing, range) from `pose_symbol`."""
        landmark = self.keys.next_landmark_symbol()
        pose = self.spatial.get_item(pose_symbol, PoseItem).data
        position = pose.transform_point([range_ * np.cos(bearing), range_ * np.sin(bearing), 0.0])
        self.synchronizer.add_bearing_range_constraint(pose_symbol, landmark, time, bearing, range_,
                                                       variance, position)
        self.keys.new_landmark_index()
        return landmark

    def insert_landmark_factor(self, pose_symbol: Symbol, landmark_symbol: Symbol, time: float,
                               measurement, variance) -> None:
        """Observation of an existing landmark from `pose_symbol`."""
        self.synchronizer.add_landmark_constraint(pose_symbol, landmark_symbol, time,
                                                  measurement, variance)

    def add_landmark_factor(self, pose_symbol: Symbol, time: float, measurement, variance) -> Symbol:
        """New landmark at `measurement` in the frame of `pose_symbol`."""
        landmark = self.keys.next_landmark_symbol()
        pose = self.spatial.get_item(pose_symbol, PoseItem).data
        self.synchronizer.add_landmark_constraint(pose_symbol, landmark, time, measurement, variance,
                                                  pose.transform_point(measurement))
        self.keys.new_landmark_index()
        return landmark

    # Values

    def insert_pose_value(self, frame: FrameId, pose: PoseWithCovariance) -> bool:
        """Overwrite the estimate of an existing pose frame."""
        try:
            self.spatial.get_item(self._symbol(frame), PoseItem).data = pose
        except SpatialGraphError as e:
            self.logger.error(f"insert_pose_value: {e}")
            return False
        return True

    def insert_landmark_value(self, frame: FrameId, position) -> bool:
        """Overwrite the estimate of an existing landmark frame."""
        try:
            self.spatial.get_item(self._symbol(frame), LandmarkItem).data = np.asarray(position, dtype=float)
        except SpatialGraphError as e:
            self.logger.error(f"insert_landmark_value: {e}")
            return False
        return True

    def get_transform_pose(self, frame: FrameId) -> Optional[PoseWithCovariance]:
        try:
            return self.spatial.get_item(self._symbol(frame), PoseItem).data
        except SpatialGraphError as e:
            self.logger.error(f"get_transform_pose: {e}")
            return None

    def get_landmark(self, frame: FrameId) -> Optional[np.ndarray]:
        try:
            return self.spatial.get_item(self._symbol(frame), LandmarkItem).data
        except SpatialGraphError as e:
            self.logger.error(f"get_landmark: {e}")
            return None

    def get_last_pose_value_and_id(self) -> Tuple[str, PoseWithCovariance]:
        """Newest pose frame name and estimate.

        Raises:
            ItemNotFoundError: if the newest frame carries no pose
        """
        symbol = self.keys.current_pose
        return str(symbol), self.spatial.get_item(symbol, PoseItem).data

    def get_rbs_pose(self, frame: FrameId, time: float = 0.0) -> Optional[RigidBodyState]:
        data = self.get_transform_pose(frame)
        if data is None:
            return None
        return RigidBodyState(
            time=time,
            source_frame=str(frame),
            target_frame="world",
            position=data.translation,
            orientation=quaternion(data.pose),
            cov_position=data.cov[:3, :3].copy(),
            cov_orientation=data.cov[3:, 3:].copy(),
        )

    def get_rbs_poses(self) -> List[RigidBodyState]:
        """Trajectory, one state per pose index."""
        poses = []
        for i in range(self.keys.pose_idx + 1):
            rbs = self.get_rbs_pose(self.keys.pose_symbol(i))
            if rbs is not None:
                poses.append(rbs)
        return poses

    # Optimization

    def optimize(self) -> bool:
        return self.optimizer.optimize()

    def marginal_covariance(self, frame: FrameId) -> np.ndarray:
        return self.optimizer.marginal_covariance(self._symbol(frame))

    def print_marginals(self) -> None:
        self.logger.info(self.optimizer.describe_marginals())

    def print_factor_graph(self, title: str = "Factor Graph") -> None:
        self.logger.info(self.estimation.describe(title))

    def num_pose_factors(self) -> int:
        return self.estimation.count(FactorKind.PRIOR, FactorKind.BETWEEN_POSE)

    def num_landmark_factors(self) -> int:
        return self.estimation.count(FactorKind.BEARING_RANGE, FactorKind.LANDMARK_OBSERVATION)

    def save_factor_graph(self, filename: str) -> bool:
        """Factor graph in graphviz form, using the current estimates."""
        values = self.optimizer.initial_estimate()
        if values is None:
            return False
        self.estimation.save_graphviz(filename, values)
        return True

    def graph_viz(self, filename: str) -> None:
        """Spatial graph in graphviz form."""
        self.spatial.write_graphviz(filename)

    # Point clouds

    def push_point_cloud(self, cloud: PointCloud) -> None:
        """Clean `cloud` and attach it to the newest pose frame."""
        cleaned = pcl.clean(cloud, self.downsample_size, self.bfilter, self.outliers)
        frame = self.keys.current_pose
        existing = self.spatial.find_item(frame, PointCloudItem)
        if existing is not None:
            cleaned = pcl.uniform_sample(existing.data + cleaned, 2.0 * self.downsample_size)
        self.spatial.set_item(frame, PointCloudItem(cleaned))
        self.logger.debug(f"{frame}: point cloud with {len(cleaned)} points")

    def get_point_cloud(self, frame: FrameId) -> PointCloud:
        """Point cloud of a frame, in the frame's coordinates.

        Raises:
            UnknownFrameError, ItemNotFoundError
        """
        return self.spatial.get_item(self._symbol(frame), PointCloudItem).data

    @staticmethod
    def transform_point_cloud(cloud: PointCloud, pose: gtsam.Pose3) -> PointCloud:
        return cloud.transformed(pose)

    def merge_point_clouds(self, downsample: bool = False) -> PointCloud:
        """All pose clouds in the global frame."""
        merged = PointCloud(np.zeros((0, 3)))
        for i in range(self.keys.pose_idx + 1):
            symbol = self.keys.pose_symbol(i)
            item = self.spatial.find_item(symbol, PointCloudItem)
            if item is None:
                continue
            pose = self.spatial.get_item(symbol, PoseItem).data.pose
            transformed = self.transform_point_cloud(item.data, pose)
            merged = transformed if len(merged) == 0 else merged + transformed
        if downsample:
            merged = pcl.downsample(merged, self.downsample_size)
        return merged

    def current_point_cloud(self, downsample: bool = False) -> PointCloud:
        """Cloud of the last completed pose frame, in the global frame.

        Raises:
            ItemNotFoundError: if that frame has no cloud
        """
        symbol = self.keys.pose_symbol(max(self.keys.pose_idx - 1, 0))
        cloud = self.transform_point_cloud(
            self.spatial.get_item(symbol, PointCloudItem).data,
            self.spatial.get_item(symbol, PoseItem).data.pose)
        if downsample:
            cloud = pcl.downsample(cloud, self.downsample_size)
        return cloud

    def current_point_cloud_to_ply(self, prefix: str, downsample: bool = False) -> str:
        symbol = self.keys.pose_symbol(max(self.keys.pose_idx - 1, 0))
        filename = f"{prefix}_{symbol}.ply"
        write_ply(self.current_point_cloud(downsample), filename)
        return filename

    # Data association

    def compute_bounding_volume(self, prev_frame: Symbol, curr_frame: Symbol) -> Optional[Symbol]:
        return self.search.compute_bounding_volume(prev_frame, curr_frame)

    def find_candidates(self, container: Optional[Symbol]) -> List[Symbol]:
        return self.search.find_candidates(container)

    def contains(self, container: Symbol, query: Symbol) -> bool:
        return self.search.contains(container, query)

    def intersects(self, frame1: Symbol, frame2: Symbol) -> bool:
        return self.search.intersects(frame1, frame2)

    def features_correspondences(self, time: float, frame: Symbol, candidates: Sequence[Symbol]) -> int:
        return self.correspondence.correspond(time, frame, candidates)

    def compute_keypoints(self) -> Optional[Symbol]:
        """Bound the last completed frame, describe its cloud and advance the search frontier.

        Returns:
            the frame that was bounded, or None with fewer than two poses
        """
        frame = None
        if self.keys.pose_idx >= 1:
            frame = self.compute_bounding_volume(self.keys.pose_symbol(self.keys.pose_idx - 1),
                                                 self.keys.current_pose)
        if frame is not None:
            self.extract_features(frame)

        self.frames_to_search = self.candidates_to_search
        self.frame_to_search_landmarks = self.candidate_frame
        self.candidates_to_search = self.find_candidates(frame)
        self.candidate_frame = frame
        return frame

    def extract_features(self, frame: Symbol) -> int:
        """Attach keypoints and descriptors computed from the frame's cloud."""
        item = self.spatial.find_item(frame, PointCloudItem)
        if item is None or len(item.data) == 0:
            self.logger.debug(f"{frame} has no point cloud, no keypoints")
            return 0
        keypoints, scales, descriptors = self.features.detect_and_describe(item.data)
        if len(keypoints) == 0:
            return 0
        self.spatial.set_item(frame, KeypointItem(keypoints, scales))
        self.spatial.set_item(frame, DescriptorItem(descriptors))
        self.logger.info(f"{frame}: {len(keypoints)} keypoints")
        return len(keypoints)

    def detect_landmarks(self, time: float) -> int:
        """Associate the frame on the search frontier with its candidates.

        Optimizes once when at least one landmark was added.

        Returns:
            number of landmarks added
        """
        frame = self.frame_to_search_landmarks
        if frame is None or not self.frames_to_search:
            return 0
        added = self.features_correspondences(time, frame, self.frames_to_search)
        if added > 0:
            self.optimize()
        return added

    def get_pose_correspondences(self) -> Tuple[int, List[int]]:
        """Index of the frame on the search frontier (-1 if none) and its candidates."""
        if self.frame_to_search_landmarks is None:
            return -1, []
        return self.frame_to_search_landmarks.index, [c.index for c in self.frames_to_search]
