"""
Correspondence & Gating Module

Descriptor matches between a frame and its spatial candidates are filtered
twice: by match score against the median score, then by a chi-square test
on the Mahalanobis distance of the positional residual. Each surviving
match becomes a landmark observed from both poses.
"""

from __future__ import annotations

import logging
from typing import Sequence, Tuple

import numpy as np

from esam_slam.core.keys import KeyManager
from esam_slam.core.spatial_graph import SpatialGraph, SpatialGraphError
from esam_slam.core.synchronizer import GraphSynchronizer
from esam_slam.core.types import DescriptorItem, KeypointItem, PoseItem, Symbol
from esam_slam.cpp import pcl


# chi2.ppf(0.95, dof)
CHI2_95 = {1: 3.84, 2: 5.99, 3: 7.81, 4: 9.49}


def accept_point_distance(mahalanobis2: float, dof: int) -> bool:
    """Chi-square gate at 5%: strictly below the critical value passes.

    Unsupported degrees of freedom are rejected.
    """
    if dof not in CHI2_95:
        return False
    return mahalanobis2 < CHI2_95[dof]


def find_feature_correspondences(source: np.ndarray, target: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Nearest target descriptor for every source descriptor.

    Returns:
        indices: (N,) target index per source descriptor
        scores: (N,) squared descriptor distances
    """
    indices, distances = pcl.match(target, source, knn=1)
    return indices[:, 0], distances[:, 0] ** 2


def median_score(scores: np.ndarray) -> float:
    """Upper median of the match scores."""
    return float(np.sort(scores)[len(scores) // 2])


class CorrespondenceEngine:
    """Turns descriptor matches between overlapping frames into landmarks."""

    def __init__(
        self,
        spatial: SpatialGraph,
        synchronizer: GraphSynchronizer,
        keys: KeyManager,
        landmark_var: Sequence[float] = (0.01, 0.01, 0.01),
        match_percentage: float = 1.0,
        logger=None
    ):
        """
        Args:
            spatial: spatial graph holding keypoints, descriptors and poses
            synchronizer: used to add landmark observations to both graphs
            keys: landmark index allocation
            landmark_var: per-axis variance of a landmark observation
            match_percentage: matches scoring above percentage * median are dropped
            logger: ROS or python logger
        """
        self.spatial = spatial
        self.synchronizer = synchronizer
        self.keys = keys
        self.landmark_var = np.asarray(landmark_var, dtype=float)
        self.match_percentage = match_percentage
        self.logger = logger if logger is not None else logging.getLogger('CorrespondenceEngine')

    def correspond(self, time: float, frame: Symbol, candidates: Sequence[Symbol]) -> int:
        """Add a landmark for every accepted match of `frame` against `candidates`.

        Returns:
            number of landmarks added
        """
        try:
            source_pose = self.spatial.get_item(frame, PoseItem).data
            source_kp = self.spatial.find_item(frame, KeypointItem)
            source_desc = self.spatial.find_item(frame, DescriptorItem)
        except SpatialGraphError as e:
            self.logger.error(f"correspond: {e}")
            return 0
        if not self._usable(source_kp, source_desc):
            self.logger.debug(f"{frame} has no keypoints, skipping correspondences")
            return 0

        added = 0
        for candidate in candidates:
            try:
                added += self._correspond_pair(time, frame, source_pose, source_kp, source_desc, candidate)
            except SpatialGraphError as e:
                self.logger.error(f"correspond {frame} -> {candidate}: {e}")
                return added
        return added

    def _correspond_pair(self, time, frame, source_pose, source_kp, source_desc, candidate) -> int:
        target_pose = self.spatial.get_item(candidate, PoseItem).data
        target_kp = self.spatial.find_item(candidate, KeypointItem)
        target_desc = self.spatial.find_item(candidate, DescriptorItem)
        if not self._usable(target_kp, target_desc):
            return 0

        indices, scores = find_feature_correspondences(source_desc.data, target_desc.data)
        matched = indices >= 0
        if not np.any(matched):
            return 0
        threshold = self.match_percentage * median_score(scores[matched])

        cov = source_pose.position_cov + np.diag(self.landmark_var)
        info = np.linalg.inv(cov)
        dof = len(self.landmark_var)

        added = 0
        for i in np.flatnonzero(matched):
            if scores[i] > threshold:
                continue
            source_local = source_kp.data[i]
            target_local = target_kp.data[indices[i]]
            source_global = source_pose.transform_point(source_local)
            residual = source_global - target_pose.transform_point(target_local)
            md = residual.dot(info).dot(residual)
            if not accept_point_distance(md, dof):
                continue

            landmark = self.keys.next_landmark_symbol()
            self.synchronizer.add_landmark_constraints(
                landmark, time, [(frame, source_local), (candidate, target_local)],
                self.landmark_var, position=source_global)
            self.keys.new_landmark_index()
            added += 1

        self.logger.info(f"{frame} -> {candidate}: {int(matched.sum())} matches, {added} landmarks")
        return added

    @staticmethod
    def _usable(keypoints, descriptors) -> bool:
        return (keypoints is not None and descriptors is not None
                and len(keypoints.data) > 0 and len(descriptors.data) > 0
                and len(keypoints.data) == len(descriptors.data))
