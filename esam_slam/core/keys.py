"""Pose and landmark index bookkeeping."""

from esam_slam.core.types import Symbol


class KeyManager:
    """Monotonic pose and landmark indices.

    `pose_idx` is the index of the newest pose (0 once the prior pose exists).
    `landmark_idx` is the number of landmarks, i.e. the next free index.
    """

    def __init__(self, pose_key: str = "x", landmark_key: str = "l"):
        if pose_key == landmark_key:
            raise ValueError("pose and landmark categories must differ")
        self.pose_key = pose_key
        self.landmark_key = landmark_key
        self.pose_idx = 0
        self.landmark_idx = 0

    def pose_symbol(self, index: int) -> Symbol:
        return Symbol(self.pose_key, index)

    def landmark_symbol(self, index: int) -> Symbol:
        return Symbol(self.landmark_key, index)

    def next_pose_symbol(self) -> Symbol:
        return self.pose_symbol(self.pose_idx + 1)

    def next_landmark_symbol(self) -> Symbol:
        return self.landmark_symbol(self.landmark_idx)

    def new_pose_index(self) -> int:
        self.pose_idx += 1
        return self.pose_idx

    def new_landmark_index(self) -> int:
        index = self.landmark_idx
        self.landmark_idx += 1
        return index

    @property
    def current_pose(self) -> Symbol:
        return self.pose_symbol(self.pose_idx)

    @property
    def current_landmark(self) -> Symbol:
        """Most recent landmark; `l0` before any landmark exists."""
        return self.landmark_symbol(max(self.landmark_idx - 1, 0))

    def is_pose(self, symbol: Symbol) -> bool:
        return symbol.category == self.pose_key

    def is_landmark(self, symbol: Symbol) -> bool:
        return symbol.category == self.landmark_key
