"""
Conversions between numpy arrays and gtsam geometry.
"""

import gtsam
import numpy as np


_POSE_BLOCK_ORDER = [3, 4, 5, 0, 1, 2]


def swap_pose_blocks(uncertainty: np.ndarray) -> np.ndarray:
    """Swap translation and rotation blocks of a 6-vector or 6x6 matrix.

    Converts between [translation, rotation] and gtsam's [rotation, translation]
    tangent ordering. The operation is its own inverse.
    """
    uncertainty = np.asarray(uncertainty, dtype=float)
    if uncertainty.ndim == 1:
        return uncertainty[_POSE_BLOCK_ORDER]
    return uncertainty[np.ix_(_POSE_BLOCK_ORDER, _POSE_BLOCK_ORDER)]


def n2g(numpy_arr: np.ndarray) -> gtsam.Pose3:
    """[x, y, z, roll, pitch, yaw] -> gtsam.Pose3"""
    x, y, z, roll, pitch, yaw = numpy_arr
    return gtsam.Pose3(gtsam.Rot3.RzRyRx(roll, pitch, yaw), gtsam.Point3(x, y, z))


def g2n(pose: gtsam.Pose3) -> np.ndarray:
    """gtsam.Pose3 -> [x, y, z, roll, pitch, yaw]"""
    rot = pose.rotation()
    return np.array([pose.x(), pose.y(), pose.z(), rot.roll(), rot.pitch(), rot.yaw()])


def pose_from_quaternion(position, quaternion) -> gtsam.Pose3:
    """Build a Pose3 from a position and a (w, x, y, z) quaternion."""
    w, x, y, z = quaternion
    return gtsam.Pose3(gtsam.Rot3.Quaternion(w, x, y, z), gtsam.Point3(*position))


def quaternion(pose: gtsam.Pose3) -> np.ndarray:
    """(w, x, y, z) quaternion of a Pose3 rotation."""
    return np.asarray(pose.rotation().quaternion(), dtype=float)


def propagate_covariance(cov: np.ndarray, delta: gtsam.Pose3, delta_cov: np.ndarray) -> np.ndarray:
    """First-order covariance of pose.compose(delta).

    Both covariances are ordered [translation, rotation].
    """
    adj = delta.inverse().AdjointMap()
    cov_g = adj @ swap_pose_blocks(cov) @ adj.T + swap_pose_blocks(delta_cov)
    return swap_pose_blocks(cov_g)


def skew(v: np.ndarray) -> np.ndarray:
    return np.array([[0.0, -v[2], v[1]],
                     [v[2], 0.0, -v[0]],
                     [-v[1], v[0], 0.0]])


def wrap_angle(angle: float) -> float:
    return float((angle + np.pi) % (2.0 * np.pi) - np.pi)


def as_covariance(uncertainty) -> np.ndarray:
    """Covariance matrix from a variance vector or a covariance matrix."""
    uncertainty = np.asarray(uncertainty, dtype=float)
    return np.diag(uncertainty) if uncertainty.ndim == 1 else uncertainty.copy()
