"""
Data types shared by the ESAM core modules.

Symbols identify variables in the estimation graph and frames in the spatial
graph. Pose covariances exchanged through these types are ordered
[translation, rotation]; see `esam_slam.utils.conversions.swap_pose_blocks`
for the conversion to gtsam's tangent ordering.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import gtsam
import numpy as np


_CHR_BITS = 8
_INDEX_BITS = 64 - _CHR_BITS
_INDEX_MASK = (1 << _INDEX_BITS) - 1


@dataclass(frozen=True, order=True)
class Symbol:
    """Variable identifier: a category character and an index."""

    category: str
    index: int

    def __post_init__(self):
        if len(self.category) != 1:
            raise ValueError(f"Symbol category must be one character, got '{self.category}'")
        if self.index < 0:
            raise ValueError(f"Symbol index must be non-negative, got {self.index}")

    def __str__(self) -> str:
        return f"{self.category}{self.index}"

    @property
    def key(self) -> int:
        """gtsam integer key for this symbol."""
        return gtsam.symbol(self.category, self.index)

    @classmethod
    def from_key(cls, key: int) -> "Symbol":
        return cls(chr(key >> _INDEX_BITS), key & _INDEX_MASK)

    @classmethod
    def parse(cls, name: str) -> "Symbol":
        """Parse a frame name such as 'x12' into a Symbol.

        Raises:
            ValueError: if the name is not a character followed by digits
        """
        if len(name) < 2 or not name[1:].isdigit():
            raise ValueError(f"'{name}' is not a symbol name")
        return cls(name[0], int(name[1:]))


class FactorKind(Enum):
    PRIOR = "prior"
    BETWEEN_POSE = "between_pose"
    BEARING_RANGE = "bearing_range"
    LANDMARK_OBSERVATION = "landmark_observation"


@dataclass
class PoseWithCovariance:
    """6-DoF pose estimate with covariance ordered [translation, rotation]."""

    pose: gtsam.Pose3
    cov: np.ndarray = field(default_factory=lambda: np.zeros((6, 6)))

    @property
    def translation(self) -> np.ndarray:
        return np.asarray(self.pose.translation(), dtype=float)

    @property
    def position_cov(self) -> np.ndarray:
        return self.cov[:3, :3]

    def transform_point(self, point: np.ndarray) -> np.ndarray:
        return np.asarray(self.pose.transformFrom(np.asarray(point, dtype=float)))

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Map an (N, 3) array from the pose frame to the global frame."""
        m = self.pose.matrix()
        return points @ m[:3, :3].T + m[:3, 3]


@dataclass
class Transform:
    """Spatial graph edge: timestamped relative pose with covariance."""

    time: float
    pose: gtsam.Pose3
    cov: np.ndarray


@dataclass
class RigidBodyState:
    """Flat pose description handed to publishers and callers."""

    time: float
    source_frame: str
    target_frame: str
    position: np.ndarray
    orientation: np.ndarray  # quaternion (w, x, y, z)
    cov_position: np.ndarray
    cov_orientation: np.ndarray


@dataclass
class AlignedBoundingBox:
    """Axis-aligned box given by its min and max corners."""

    min: np.ndarray
    max: np.ndarray

    def contains(self, point: np.ndarray) -> bool:
        point = np.asarray(point)
        return bool(np.all(point >= self.min) and np.all(point <= self.max))

    def intersects(self, other: "AlignedBoundingBox") -> bool:
        return bool(np.all(self.min <= other.max) and np.all(other.min <= self.max))

    def center(self) -> np.ndarray:
        return 0.5 * (self.min + self.max)


@dataclass
class PointCloud:
    """Point cloud with optional RGBA colors in [0, 1].

    An organized cloud keeps `height` rows of `width` points; unorganized
    clouds have height 1.
    """

    points: np.ndarray
    colors: Optional[np.ndarray] = None
    height: int = 1
    width: int = 0

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)
        if self.colors is not None:
            self.colors = np.asarray(self.colors, dtype=np.float64)
            if self.colors.ndim != 2:
                self.colors = self.colors.reshape(len(self.points), -1)
        if self.height == 1 or self.height * self.width != len(self.points):
            self.height = 1
            self.width = len(self.points)

    def __len__(self) -> int:
        return len(self.points)

    @property
    def is_organized(self) -> bool:
        return self.height > 1

    def select(self, mask) -> "PointCloud":
        colors = self.colors[mask] if self.colors is not None else None
        return PointCloud(self.points[mask], colors)

    def transformed(self, pose: gtsam.Pose3) -> "PointCloud":
        m = pose.matrix()
        points = self.points @ m[:3, :3].T + m[:3, 3]
        return PointCloud(points, self.colors, self.height, self.width)

    def __add__(self, other: "PointCloud") -> "PointCloud":
        if self.colors is not None and other.colors is not None:
            colors = np.vstack([self.colors, other.colors])
        else:
            colors = None
        return PointCloud(np.vstack([self.points, other.points]), colors)


# Items attached to spatial graph frames

@dataclass
class PoseItem:
    data: PoseWithCovariance
    boundary: Optional[AlignedBoundingBox] = None

    def contains(self, point: np.ndarray) -> bool:
        return self.boundary is not None and self.boundary.contains(point)

    def intersects(self, other: "PoseItem") -> bool:
        if self.boundary is None or other.boundary is None:
            return False
        return self.boundary.intersects(other.boundary)

    def center_of_boundary(self) -> Optional[np.ndarray]:
        return self.boundary.center() if self.boundary is not None else None


@dataclass
class LandmarkItem:
    data: np.ndarray


@dataclass
class PointCloudItem:
    data: PointCloud


@dataclass
class KeypointItem:
    data: np.ndarray  # (N, 3) in the pose frame
    scales: Optional[np.ndarray] = None


@dataclass
class DescriptorItem:
    data: np.ndarray  # (N, D)


# Parameter groups

class OutlierType(Enum):
    NONE = "none"
    RADIUS = "radius"
    STATISTICAL = "statistical"


@dataclass
class BilateralFilterParams:
    filtering: bool = False
    spatial_width: float = 15.0
    range_sigma: float = 0.05


@dataclass
class OutlierRemovalParams:
    """RADIUS: parameter_one = radius, parameter_two = min neighbors.
    STATISTICAL: parameter_one = mean k, parameter_two = std multiplier.
    """

    type: OutlierType = OutlierType.NONE
    parameter_one: float = 0.0
    parameter_two: float = 0.0


@dataclass
class SIFTKeypointParams:
    min_scale: float = 0.08
    nr_octaves: int = 3
    nr_scales_per_octave: int = 3
    min_contrast: float = 5.0


@dataclass
class FPFHFeatureParams:
    normal_radius: float = 0.1
    feature_radius: float = 1.0
