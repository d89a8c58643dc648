"""
Optimizer Driver Module

Collects the initial estimate from the spatial graph, solves the estimation
graph and writes the optimized poses (with marginal covariance) and landmark
positions back into the spatial graph.
"""

from __future__ import annotations

import logging
from typing import Optional

import gtsam
import numpy as np

from esam_slam.core.estimation_graph import EstimationGraph
from esam_slam.core.keys import KeyManager
from esam_slam.core.spatial_graph import SpatialGraph, SpatialGraphError
from esam_slam.core.types import LandmarkItem, PoseItem, PoseWithCovariance, Symbol
from esam_slam.utils.conversions import swap_pose_blocks
from esam_slam.utils.io import CodeTimer


class OptimizerDriver:
    """Runs Gauss-Newton over the whole graph and back-propagates the result."""

    def __init__(
        self,
        spatial: SpatialGraph,
        estimation: EstimationGraph,
        keys: KeyManager,
        relative_error_tol: float = 1e-5,
        max_iterations: int = 100,
        logger=None
    ):
        self.spatial = spatial
        self.estimation = estimation
        self.keys = keys
        self.relative_error_tol = relative_error_tol
        self.max_iterations = max_iterations
        self.logger = logger if logger is not None else logging.getLogger('OptimizerDriver')

        self.marginals: Optional[gtsam.Marginals] = None
        self.result: Optional[gtsam.Values] = None

    def initial_estimate(self) -> Optional[gtsam.Values]:
        """Current pose and landmark estimates, or None if any is missing."""
        values = gtsam.Values()
        try:
            for i in range(self.keys.pose_idx + 1):
                symbol = self.keys.pose_symbol(i)
                values.insert(symbol.key, self.spatial.get_item(symbol, PoseItem).data.pose)
            for i in range(self.keys.landmark_idx):
                symbol = self.keys.landmark_symbol(i)
                position = self.spatial.get_item(symbol, LandmarkItem).data
                values.insert(symbol.key, gtsam.Point3(*position))
        except SpatialGraphError as e:
            self.logger.error(f"initial estimate incomplete: {e}")
            return None
        return values

    def optimize(self) -> bool:
        """Solve and write back. Returns False when nothing was written."""
        initial = self.initial_estimate()
        if initial is None:
            return False

        try:
            with CodeTimer("OptimizerDriver - optimize", self.logger):
                result, marginals = self.estimation.optimize(
                    initial, self.relative_error_tol, self.max_iterations)
        except RuntimeError as e:
            # gtsam reports indeterminate or singular systems as RuntimeError
            self.logger.error(f"optimize failed: {e}")
            return False
        self.logger.info(f"optimize: error {self.estimation.error(initial):.6f} -> "
                         f"{self.estimation.error(result):.6f}")
        self.result = result
        self.marginals = marginals

        try:
            for i in range(self.keys.pose_idx + 1):
                symbol = self.keys.pose_symbol(i)
                item = self.spatial.get_item(symbol, PoseItem)
                item.data = PoseWithCovariance(result.atPose3(symbol.key),
                                               self.marginal_covariance(symbol))
            for i in range(self.keys.landmark_idx):
                symbol = self.keys.landmark_symbol(i)
                item = self.spatial.get_item(symbol, LandmarkItem)
                item.data = np.asarray(result.atPoint3(symbol.key), dtype=float)
        except SpatialGraphError as e:
            self.logger.error(f"write-back aborted: {e}")
            return False
        return True

    def marginal_covariance(self, symbol: Symbol) -> np.ndarray:
        """Marginal covariance of the last solve; poses ordered [translation, rotation].

        Raises:
            RuntimeError: before the first successful optimize
        """
        if self.marginals is None:
            raise RuntimeError("no marginals available before optimize")
        cov = self.marginals.marginalCovariance(symbol.key)
        if self.keys.is_pose(symbol):
            return swap_pose_blocks(cov)
        return np.asarray(cov)

    def describe_marginals(self) -> str:
        if self.marginals is None or self.result is None:
            return "no marginals available"
        lines = []
        for key in self.result.keys():
            symbol = Symbol.from_key(key)
            lines.append(f"{symbol} covariance:\n{self.marginal_covariance(symbol)}")
        return "\n".join(lines)
