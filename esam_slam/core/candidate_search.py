"""
Spatial Candidate Search Module

A finished pose frame gets an axis-aligned bounding box spanning its own
position and the next one, inflated by per-axis margins. Every earlier pose
whose position (or bounding box center) falls into that box is a candidate
for data association.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np

from esam_slam.core.keys import KeyManager
from esam_slam.core.spatial_graph import SpatialGraph, SpatialGraphError
from esam_slam.core.types import AlignedBoundingBox, PoseItem, Symbol


# Index gap above which a candidate is reported as a probable loop closure
LOOP_CLOSURE_GAP = 10


class CandidateSearch:
    """Bounding volumes of pose frames and the containment search over them."""

    def __init__(
        self,
        spatial: SpatialGraph,
        keys: KeyManager,
        margins: Sequence[float] = (0.05, 0.4, 1.0),
        use_statistical_margins: bool = False,
        logger=None
    ):
        """
        Args:
            spatial: spatial graph holding the pose frames
            keys: index manager giving the current pose index
            margins: fixed per-axis inflation (x, y, z) in meters
            use_statistical_margins: inflate by the positional standard
                deviation of each pose instead of the fixed margins
            logger: ROS or python logger
        """
        self.spatial = spatial
        self.keys = keys
        self.margins = np.asarray(margins, dtype=float)
        self.use_statistical_margins = use_statistical_margins
        self.logger = logger if logger is not None else logging.getLogger('CandidateSearch')

    def compute_bounding_volume(self, prev_frame: Symbol, curr_frame: Symbol) -> Optional[Symbol]:
        """Attach the bounding box of prev_frame and return prev_frame.

        Returns None while only the prior pose exists.
        """
        if self.keys.pose_idx < 1:
            return None

        try:
            prev = self.spatial.get_item(prev_frame, PoseItem)
            curr = self.spatial.get_item(curr_frame, PoseItem)
        except SpatialGraphError as e:
            self.logger.error(f"compute_bounding_volume: {e}")
            return None

        p_prev = prev.data.translation
        p_curr = curr.data.translation
        if self.use_statistical_margins:
            m_prev = np.sqrt(np.abs(np.diag(prev.data.position_cov)))
            m_curr = np.sqrt(np.abs(np.diag(curr.data.position_cov)))
        else:
            m_prev = m_curr = self.margins

        low = np.minimum(p_prev - m_prev, p_curr - m_curr)
        high = np.maximum(p_prev + m_prev, p_curr + m_curr)

        prev.boundary = AlignedBoundingBox(low, high)
        self.logger.debug(f"bounding box of {prev_frame}: min {low} max {high}")
        return prev_frame

    def contains(self, container: Symbol, query: Symbol) -> bool:
        """True if the box of `container` holds the position of `query`.

        A query older than the container is also accepted when the center
        of its own box lies in the container's box.
        """
        box = self.spatial.get_item(container, PoseItem)
        other = self.spatial.get_item(query, PoseItem)
        if box.contains(other.data.translation):
            return True
        if query.index >= container.index:
            return False
        center = other.center_of_boundary()
        return center is not None and box.contains(center)

    def intersects(self, frame1: Symbol, frame2: Symbol) -> bool:
        item1 = self.spatial.get_item(frame1, PoseItem)
        item2 = self.spatial.get_item(frame2, PoseItem)
        return item1.intersects(item2)

    def find_candidates(self, container: Optional[Symbol]) -> List[Symbol]:
        """All other pose frames contained by the box of `container`, by index."""
        candidates: List[Symbol] = []
        if container is None:
            return candidates

        for i in range(self.keys.pose_idx + 1):
            frame = self.keys.pose_symbol(i)
            if frame == container:
                continue
            try:
                if not self.contains(container, frame):
                    continue
            except SpatialGraphError as e:
                self.logger.error(f"find_candidates: {e}")
                continue
            candidates.append(frame)
            if abs(container.index - i) > LOOP_CLOSURE_GAP:
                self.logger.info(f"probable loop closure between {container} and {frame}")

        self.logger.debug(f"{container} candidates: {[str(c) for c in candidates]}")
        return candidates
