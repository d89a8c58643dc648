"""
Graph Synchronizer Module

Every measurement is added to both graphs in one operation: the factor goes
into the estimation graph and an equivalent transform edge (plus the item of
a newly created frame) into the spatial graph. All inputs are validated
before either graph is touched, so a rejected measurement leaves no trace.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence, Tuple

import gtsam
import numpy as np

from esam_slam.core.estimation_graph import EstimationGraph
from esam_slam.core.spatial_graph import SpatialGraph, UnknownFrameError
from esam_slam.core.types import LandmarkItem, PoseItem, PoseWithCovariance, Symbol, Transform
from esam_slam.utils.conversions import as_covariance


class GraphSynchronizer:
    """Keeps the estimation graph and the spatial graph in lockstep."""

    def __init__(self, spatial: SpatialGraph, estimation: EstimationGraph):
        self.spatial = spatial
        self.estimation = estimation

    def add_prior_constraint(self, symbol: Symbol, pose: PoseWithCovariance, uncertainty) -> None:
        """Create the frame of `symbol` with `pose` and anchor it with a prior."""
        noise = EstimationGraph.create_noise_model(uncertainty, 6, pose=True)
        if symbol in self.spatial:
            raise ValueError(f"frame '{symbol}' already exists")
        self.spatial.add_frame(symbol)
        try:
            self.spatial.set_item(symbol, PoseItem(pose))
            self.estimation.add_prior(symbol, pose.pose, noise)
        except Exception:
            self.spatial.remove_frame(symbol)
            raise

    def add_pose_constraint(self, symbol1: Symbol, symbol2: Symbol, time: float, delta: gtsam.Pose3,
                            uncertainty, pose: Optional[PoseWithCovariance] = None) -> None:
        """Between-pose factor from symbol1 to symbol2.

        Args:
            pose: initial estimate for symbol2, required when its frame
                does not exist yet
        """
        noise = EstimationGraph.create_noise_model(uncertainty, 6, pose=True)
        cov = as_covariance(uncertainty)
        item = PoseItem(pose) if pose is not None else None
        self._commit(symbol1, symbol2, Transform(time, delta, cov), item,
                     lambda: self.estimation.add_between(symbol1, symbol2, delta, noise))

    def add_bearing_range_constraint(self, pose_symbol: Symbol, landmark_symbol: Symbol, time: float,
                                     bearing: float, range_: float, variance,
                                     position: Optional[np.ndarray] = None) -> None:
        """Bearing-range factor; variance is ordered (bearing, range)."""
        noise = EstimationGraph.create_noise_model(variance, 2)
        variance = np.asarray(variance, dtype=float)
        cov = np.zeros((6, 6))
        cov[0, 0] = variance[1]
        cov[5, 5] = variance[0]
        delta = gtsam.Pose3(gtsam.Rot3.Yaw(bearing),
                            gtsam.Point3(range_ * np.cos(bearing), range_ * np.sin(bearing), 0.0))
        item = LandmarkItem(np.asarray(position, dtype=float)) if position is not None else None
        self._commit(pose_symbol, landmark_symbol, Transform(time, delta, cov), item,
                     lambda: self.estimation.add_bearing_range(pose_symbol, landmark_symbol,
                                                               bearing, range_, noise))

    def add_landmark_constraint(self, pose_symbol: Symbol, landmark_symbol: Symbol, time: float,
                                measurement: np.ndarray, variance,
                                position: Optional[np.ndarray] = None) -> None:
        """Landmark position observed in the pose frame."""
        self.add_landmark_constraints(landmark_symbol, time, [(pose_symbol, measurement)], variance, position)

    def add_landmark_constraints(self, landmark_symbol: Symbol, time: float,
                                 observations: Sequence[Tuple[Symbol, np.ndarray]], variance,
                                 position: Optional[np.ndarray] = None) -> None:
        """Several observations of one landmark, added all-or-nothing.

        Args:
            observations: (pose symbol, measured point in that pose frame)
            position: global position, required when the landmark frame
                does not exist yet
        """
        noise = EstimationGraph.create_noise_model(variance, 3)
        cov = np.zeros((6, 6))
        cov[:3, :3] = as_covariance(variance)
        for pose_symbol, _ in observations:
            if pose_symbol not in self.spatial:
                raise UnknownFrameError(str(pose_symbol))
        if landmark_symbol not in self.spatial and position is None:
            raise UnknownFrameError(str(landmark_symbol))

        created = landmark_symbol not in self.spatial
        if created:
            self.spatial.add_frame(landmark_symbol)
            self.spatial.set_item(landmark_symbol, LandmarkItem(np.asarray(position, dtype=float)))
        added = []
        try:
            for pose_symbol, measurement in observations:
                measurement = np.asarray(measurement, dtype=float)
                delta = gtsam.Pose3(gtsam.Rot3(), gtsam.Point3(*measurement))
                self.spatial.add_transform(pose_symbol, landmark_symbol, Transform(time, delta, cov))
                added.append(pose_symbol)
            for pose_symbol, measurement in observations:
                self.estimation.add_landmark_observation(pose_symbol, landmark_symbol,
                                                         np.asarray(measurement, dtype=float), noise)
        except Exception:
            self._rollback(added, landmark_symbol, created)
            raise

    def _commit(self, source: Symbol, target: Symbol, transform: Transform, target_item,
                add_factor: Callable[[], None]) -> None:
        if source not in self.spatial:
            raise UnknownFrameError(str(source))
        created = target not in self.spatial
        if created and target_item is None:
            raise UnknownFrameError(str(target))

        if created:
            self.spatial.add_frame(target)
            self.spatial.set_item(target, target_item)
        try:
            self.spatial.add_transform(source, target, transform)
            add_factor()
        except Exception:
            self._rollback([source], target, created)
            raise

    def _rollback(self, sources, target: Symbol, created: bool) -> None:
        for source in sources:
            if self.spatial.has_transform(source, target):
                self.spatial.remove_transform(source, target)
        if created:
            self.spatial.remove_frame(target)
