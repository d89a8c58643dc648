"""
Estimation Graph Module

Wraps a gtsam.NonlinearFactorGraph: builds noise models, adds the prior,
between-pose, bearing-range and landmark observation factors, and solves the
graph with Gauss-Newton followed by marginal covariances.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

import gtsam
import numpy as np

from esam_slam.core.factors import bearing_range_factor, landmark_factor
from esam_slam.core.types import FactorKind, Symbol
from esam_slam.utils.conversions import swap_pose_blocks


@dataclass(frozen=True)
class FactorRecord:
    kind: FactorKind
    symbols: Tuple[Symbol, ...]


class EstimationGraph:
    """Append-only factor graph with a record of every factor added."""

    def __init__(self):
        self.graph = gtsam.NonlinearFactorGraph()
        self.records: List[FactorRecord] = []

    def __len__(self) -> int:
        return len(self.records)

    def count(self, *kinds: FactorKind) -> int:
        """Number of factors of the given kinds."""
        return sum(1 for r in self.records if r.kind in kinds)

    @staticmethod
    def create_noise_model(uncertainty, dim: int, pose: bool = False) -> gtsam.noiseModel.Base:
        """Create a noise model from a variance vector or a covariance matrix.

        Args:
            uncertainty: (dim,) variances or (dim, dim) covariance
            dim: dimension of the factor error
            pose: True if the uncertainty is a pose covariance ordered
                [translation, rotation]

        Returns:
            gtsam.noiseModel.Diagonal for vectors, Gaussian for matrices

        Raises:
            ValueError: on a shape mismatch
        """
        uncertainty = np.asarray(uncertainty, dtype=float)
        if uncertainty.shape not in ((dim,), (dim, dim)):
            raise ValueError(f"expected ({dim},) variances or ({dim}, {dim}) covariance, "
                             f"got shape {uncertainty.shape}")
        if pose:
            uncertainty = swap_pose_blocks(uncertainty)
        if uncertainty.ndim == 1:
            return gtsam.noiseModel.Diagonal.Variances(uncertainty)
        return gtsam.noiseModel.Gaussian.Covariance(uncertainty)

    def _add(self, factor, kind: FactorKind, *symbols: Symbol) -> None:
        self.graph.add(factor)
        self.records.append(FactorRecord(kind, tuple(symbols)))

    def add_prior(self, symbol: Symbol, pose: gtsam.Pose3, noise: gtsam.noiseModel.Base) -> None:
        self._add(gtsam.PriorFactorPose3(symbol.key, pose, noise), FactorKind.PRIOR, symbol)

    def add_between(self, symbol1: Symbol, symbol2: Symbol, delta: gtsam.Pose3,
                    noise: gtsam.noiseModel.Base) -> None:
        self._add(gtsam.BetweenFactorPose3(symbol1.key, symbol2.key, delta, noise),
                  FactorKind.BETWEEN_POSE, symbol1, symbol2)

    def add_bearing_range(self, pose: Symbol, landmark: Symbol, bearing: float, range_: float,
                          noise: gtsam.noiseModel.Base) -> None:
        self._add(bearing_range_factor(pose.key, landmark.key, bearing, range_, noise),
                  FactorKind.BEARING_RANGE, pose, landmark)

    def add_landmark_observation(self, pose: Symbol, landmark: Symbol, measured: np.ndarray,
                                 noise: gtsam.noiseModel.Base) -> None:
        self._add(landmark_factor(pose.key, landmark.key, measured, noise),
                  FactorKind.LANDMARK_OBSERVATION, pose, landmark)

    def optimize(self, initial: gtsam.Values, relative_error_tol: float = 1e-5,
                 max_iterations: int = 100) -> Tuple[gtsam.Values, gtsam.Marginals]:
        params = gtsam.GaussNewtonParams()
        params.setRelativeErrorTol(relative_error_tol)
        params.setMaxIterations(max_iterations)
        optimizer = gtsam.GaussNewtonOptimizer(self.graph, initial, params)
        result = optimizer.optimize()
        return result, gtsam.Marginals(self.graph, result)

    def error(self, values: gtsam.Values) -> float:
        return self.graph.error(values)

    def describe(self, title: str = "Factor Graph") -> str:
        lines = [f"{title}: {len(self.records)} factors"]
        for i, record in enumerate(self.records):
            symbols = ", ".join(str(s) for s in record.symbols)
            lines.append(f"  factor {i}: {record.kind.value}({symbols})")
        return "\n".join(lines)

    def save_graphviz(self, filename: str, values: gtsam.Values) -> None:
        self.graph.saveGraph(filename, values)
