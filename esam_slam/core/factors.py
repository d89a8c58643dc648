"""
Measurement factors between a Pose3 and a Point3 landmark.

Both are gtsam.CustomFactor instances with analytic Jacobians. With
q = R^T (p - t) the landmark expressed in the pose frame:

    dq/dpose  = [skew(q), -I]   (gtsam tangent order: rotation, translation)
    dq/dpoint = R^T
"""

from functools import partial
from typing import List, Optional

import gtsam
import numpy as np

from esam_slam.utils.conversions import skew, wrap_angle


def _landmark_in_pose(this: gtsam.CustomFactor, values: gtsam.Values):
    keys = this.keys()
    pose = values.atPose3(keys[0])
    point = values.atPoint3(keys[1])
    q = np.asarray(pose.transformTo(point), dtype=float)
    return pose, q


def _landmark_error(measured: np.ndarray, this: gtsam.CustomFactor, values: gtsam.Values,
                    H: Optional[List[np.ndarray]]) -> np.ndarray:
    pose, q = _landmark_in_pose(this, values)
    if H is not None:
        H[0] = np.hstack([skew(q), -np.eye(3)])
        H[1] = pose.rotation().matrix().T
    return q - measured


def _bearing_range_error(bearing: float, range_: float, this: gtsam.CustomFactor,
                         values: gtsam.Values, H: Optional[List[np.ndarray]]) -> np.ndarray:
    pose, q = _landmark_in_pose(this, values)
    rho2 = q[0] ** 2 + q[1] ** 2
    dist = np.linalg.norm(q)
    if H is not None:
        d_bearing = np.array([-q[1] / rho2, q[0] / rho2, 0.0]) if rho2 > 0 else np.zeros(3)
        d_range = q / dist if dist > 0 else np.zeros(3)
        dq = np.vstack([d_bearing, d_range])
        H[0] = dq @ np.hstack([skew(q), -np.eye(3)])
        H[1] = dq @ pose.rotation().matrix().T
    return np.array([wrap_angle(np.arctan2(q[1], q[0]) - bearing), dist - range_])


def landmark_factor(pose_key: int, landmark_key: int, measured: np.ndarray,
                    noise: gtsam.noiseModel.Base) -> gtsam.CustomFactor:
    """Observation of a landmark position relative to a pose."""
    measured = np.asarray(measured, dtype=float).copy()
    return gtsam.CustomFactor(noise, [pose_key, landmark_key], partial(_landmark_error, measured))


def bearing_range_factor(pose_key: int, landmark_key: int, bearing: float, range_: float,
                         noise: gtsam.noiseModel.Base) -> gtsam.CustomFactor:
    """Azimuth about the pose z axis and euclidean distance to a landmark."""
    return gtsam.CustomFactor(noise, [pose_key, landmark_key],
                              partial(_bearing_range_error, float(bearing), float(range_)))
