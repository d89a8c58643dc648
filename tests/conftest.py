"""Shared fixtures for esam_slam tests."""

import gtsam
import numpy as np
import pytest

from esam_slam.core.esam import ESAM


ODOM_VARIANCE = 1e-3 * np.ones(6)


def translation(x: float = 0.0, y: float = 0.0, z: float = 0.0) -> gtsam.Pose3:
    return gtsam.Pose3(gtsam.Rot3(), gtsam.Point3(x, y, z))


def drive(esam: ESAM, deltas) -> None:
    """Append one pose per delta."""
    for i, delta in enumerate(deltas):
        esam.add_delta_pose_factor(float(i + 1), delta, ODOM_VARIANCE)


@pytest.fixture
def esam() -> ESAM:
    """Graph with only the prior pose at the origin."""
    return ESAM(gtsam.Pose3(), 1e-4 * np.ones(6))


@pytest.fixture
def back_and_forth() -> ESAM:
    """x0 and x2 at the origin, x1 and x3 at y = 0.3."""
    esam = ESAM(gtsam.Pose3(), 1e-4 * np.ones(6))
    drive(esam, [translation(y=0.3), translation(y=-0.3), translation(y=0.3)])
    return esam
