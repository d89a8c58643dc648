"""
Spatial/attribute graph store.

Frames are nodes of a networkx.DiGraph, each holding a dict of typed items
(one per item type). Edges carry a `Transform`.
"""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional, Type, TypeVar

import networkx as nx

from esam_slam.core.types import Transform
from esam_slam.utils.conversions import g2n

T = TypeVar("T")


class SpatialGraphError(KeyError):
    pass


class UnknownFrameError(SpatialGraphError):
    """Raised when a frame is not part of the graph."""

    def __init__(self, frame: str):
        super().__init__(frame)
        self.frame = frame

    def __str__(self) -> str:
        return f"unknown frame '{self.frame}'"


class ItemNotFoundError(SpatialGraphError):
    """Raised when a frame exists but carries no item of the requested type."""

    def __init__(self, frame: str, item_type: type):
        super().__init__(frame)
        self.frame = frame
        self.item_type = item_type

    def __str__(self) -> str:
        return f"frame '{self.frame}' has no {self.item_type.__name__}"


class SpatialGraph:
    """Frames, typed items and timestamped transforms between frames."""

    def __init__(self):
        self.graph = nx.DiGraph()

    def __contains__(self, frame) -> bool:
        return str(frame) in self.graph

    def __len__(self) -> int:
        return self.graph.number_of_nodes()

    def frames(self) -> List[str]:
        return list(self.graph.nodes)

    def add_frame(self, frame) -> None:
        frame = str(frame)
        if frame not in self.graph:
            self.graph.add_node(frame, items={})

    def remove_frame(self, frame) -> None:
        self.graph.remove_node(str(frame))

    def _items(self, frame) -> Dict[type, object]:
        frame = str(frame)
        if frame not in self.graph:
            raise UnknownFrameError(frame)
        return self.graph.nodes[frame]["items"]

    # Items

    def set_item(self, frame, item) -> None:
        """Attach `item`, replacing any item of the same type."""
        self._items(frame)[type(item)] = item

    def get_item(self, frame, item_type: Type[T]) -> T:
        items = self._items(frame)
        if item_type not in items:
            raise ItemNotFoundError(str(frame), item_type)
        return items[item_type]

    def find_item(self, frame, item_type: Type[T]) -> Optional[T]:
        """Like get_item but returns None when the frame has no such item."""
        return self._items(frame).get(item_type)

    def has_item(self, frame, item_type: type) -> bool:
        return item_type in self._items(frame)

    def item_count(self, frame, item_type: type) -> int:
        return int(self.has_item(frame, item_type))

    def remove_item(self, frame, item_type: type) -> None:
        self._items(frame).pop(item_type, None)

    def frames_with(self, item_type: type) -> Iterator[str]:
        for frame, data in self.graph.nodes(data=True):
            if item_type in data["items"]:
                yield frame

    # Transforms

    def add_transform(self, source, target, transform: Transform) -> None:
        """Add or update the edge source -> target.

        Raises:
            UnknownFrameError: if either frame is missing
        """
        source, target = str(source), str(target)
        for frame in (source, target):
            if frame not in self.graph:
                raise UnknownFrameError(frame)
        self.graph.add_edge(source, target, transform=transform)

    def remove_transform(self, source, target) -> None:
        self.graph.remove_edge(str(source), str(target))

    def get_transform(self, source, target) -> Transform:
        source, target = str(source), str(target)
        if not self.graph.has_edge(source, target):
            missing = source if source not in self.graph else target
            raise UnknownFrameError(missing)
        return self.graph.edges[source, target]["transform"]

    def has_transform(self, source, target) -> bool:
        return self.graph.has_edge(str(source), str(target))

    def num_transforms(self) -> int:
        return self.graph.number_of_edges()

    # Export

    def to_dot(self) -> str:
        lines = ["digraph spatial_graph {"]
        for frame, data in self.graph.nodes(data=True):
            label = "\\n".join([frame] + sorted(t.__name__ for t in data["items"]))
            lines.append(f'  "{frame}" [label="{label}"];')
        for source, target, data in self.graph.edges(data=True):
            tf = data["transform"]
            x, y, z, roll, pitch, yaw = g2n(tf.pose)
            label = f"t={tf.time:.3f}\\n({x:.2f}, {y:.2f}, {z:.2f})\\n({roll:.2f}, {pitch:.2f}, {yaw:.2f})"
            lines.append(f'  "{source}" -> "{target}" [label="{label}"];')
        lines.append("}")
        return "\n".join(lines) + "\n"

    def write_graphviz(self, filename: str) -> None:
        with open(filename, "w") as f:
            f.write(self.to_dot())
