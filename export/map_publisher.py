from __future__ import annotations

import logging
import threading
from typing import Any, Callable

import numpy as np

from observability import metrics
from world.instance_store import BACKGROUND_ID, InstanceStore
from world.octree import TREE_DEPTH, Key, VoxelOctree
from world.octree_codec import OctreeCodecError, dump_binary, dump_full

logger = logging.getLogger(__name__)

TOPICS = (
    "octomap_binary",
    "octomap_full",
    "grids",
    "grids_noentry",
    "markers_free",
    "markers_bg",
    "markers_fg",
    "label_rendered",
    "label_tracked",
    "class",
)

Consumer = Callable[[Any], None]


def label_colormap(n: int = 256) -> np.ndarray:
    """PASCAL-VOC style colormap, (n, 3) float in [0, 1]."""

    def bit(v: int, i: int) -> int:
        return (v >> i) & 1

    cmap = np.zeros((n, 3), dtype=np.float64)
    for i in range(n):
        r = g = b = 0
        c = i
        for j in range(8):
            r |= bit(c, 0) << (7 - j)
            g |= bit(c, 1) << (7 - j)
            b |= bit(c, 2) << (7 - j)
            c >>= 3
        cmap[i] = (r / 255.0, g / 255.0, b / 255.0)
    return cmap


_CMAP = label_colormap()


def _neighbour_offsets() -> list[tuple[int, int, int]]:
    return [
        (dx, dy, dz)
        for dz in (-1, 0, 1)
        for dy in (-1, 0, 1)
        for dx in (-1, 0, 1)
        if (dx, dy, dz) != (0, 0, 0)
    ]


_NEIGHBOURS = _neighbour_offsets()


def is_speckle(tree: VoxelOctree, key: Key) -> bool:
    """True when none of the 26 neighbours of `key` is occupied."""
    for dx, dy, dz in _NEIGHBOURS:
        if tree.is_key_occupied((key[0] + dx, key[1] + dy, key[2] + dz)):
            return False
    return True


def _marker(
    *,
    frame_id: str,
    stamp: float,
    ns: str,
    depth: int,
    size: float,
    color: tuple[float, float, float, float],
    points: list[list[float]],
) -> dict[str, Any]:
    return {
        "header": {"frame_id": frame_id, "stamp": float(stamp)},
        "ns": ns,
        "id": int(depth),
        "type": "CUBE_LIST",
        "action": "ADD" if points else "DELETE",
        "scale": [size, size, size],
        "color": list(color),
        "pose": {"position": [0.0, 0.0, 0.0], "orientation": [0.0, 0.0, 0.0, 1.0]},
        "points": points,
    }


class MapPublisher:
    """
    Fans map outputs out to attached consumers.

    Outputs nobody listens to are never computed; this includes the
    serialized background map.
    """

    def __init__(self, store: InstanceStore, *, frame_id: str = "map", filter_speckles: bool = False) -> None:
        self.store = store
        self.frame_id = frame_id
        self.filter_speckles = bool(filter_speckles)
        self._consumers: dict[str, list[Consumer]] = {t: [] for t in TOPICS}
        self._lock = threading.Lock()

    def attach(self, topic: str, consumer: Consumer) -> None:
        if topic not in self._consumers:
            raise KeyError(f"unknown topic: {topic}")
        with self._lock:
            self._consumers[topic].append(consumer)

    def detach(self, topic: str, consumer: Consumer | None = None) -> None:
        if topic not in self._consumers:
            raise KeyError(f"unknown topic: {topic}")
        with self._lock:
            if consumer is None:
                self._consumers[topic] = []
            else:
                self._consumers[topic] = [c for c in self._consumers[topic] if c is not consumer]

    def has_consumers(self, topic: str) -> bool:
        with self._lock:
            return bool(self._consumers.get(topic))

    def publish(self, topic: str, message: Any) -> bool:
        with self._lock:
            consumers = list(self._consumers.get(topic) or [])
        for c in consumers:
            c(message)
        return bool(consumers)

    # ---- markers ---------------------------------------------------------------

    def _occupied_by_object(self, center: tuple[float, float, float]) -> bool:
        for iid in self.store.object_ids():
            p = self.store.get(iid).search(center)
            if p is not None and p > 0.5:
                return True
        return False

    def occupied_markers(self, stamp: float) -> tuple[list[dict], list[dict]]:
        """Returns (background markers, foreground markers), one cube list per depth."""
        bg_markers: list[dict] = []
        fg_markers: list[dict] = []
        for iid, tree in self.store:
            by_depth: list[list[list[float]]] = [[] for _ in range(TREE_DEPTH + 1)]
            for leaf in tree.iter_leafs(TREE_DEPTH):
                if not tree.is_node_occupied(leaf.probability):
                    continue
                if iid == BACKGROUND_ID:
                    if self.filter_speckles and leaf.depth == TREE_DEPTH and is_speckle(tree, leaf.key):
                        continue
                    if self._occupied_by_object(leaf.center):
                        continue
                by_depth[leaf.depth].append(list(leaf.center))
            r, g, b = _CMAP[(iid + 1) % len(_CMAP)]
            out = bg_markers if iid == BACKGROUND_ID else fg_markers
            for depth, points in enumerate(by_depth):
                out.append(
                    _marker(
                        frame_id=self.frame_id,
                        stamp=stamp,
                        ns=str(iid),
                        depth=depth,
                        size=tree.node_size(depth),
                        color=(float(r), float(g), float(b), 0.5),
                        points=points,
                    )
                )
        return bg_markers, fg_markers

    def free_markers(self, stamp: float) -> list[dict]:
        bg = self.store.background
        if bg is None:
            return []
        by_depth: list[list[list[float]]] = [[] for _ in range(TREE_DEPTH + 1)]
        for leaf in bg.iter_leafs(TREE_DEPTH):
            if not bg.is_node_occupied(leaf.probability):
                by_depth[leaf.depth].append(list(leaf.center))
        return [
            _marker(
                frame_id=self.frame_id,
                stamp=stamp,
                ns="map",
                depth=depth,
                size=bg.node_size(depth),
                color=(0.5, 0.5, 0.5, 1.0),
                points=points,
            )
            for depth, points in enumerate(by_depth)
        ]

    # ---- map export --------------------------------------------------------------

    def _publish_map(self, topic: str, encode: Callable[[VoxelOctree], bytes], stamp: float) -> bool:
        bg = self.store.background
        if bg is None:
            return False
        try:
            data = encode(bg)
        except OctreeCodecError as exc:
            logger.error("Error serializing octree for %s: %s", topic, exc)
            metrics.MAP_EXPORT_FAILURES.labels(topic).inc()
            return False
        return self.publish(topic, {"frame_id": self.frame_id, "stamp": float(stamp), "data": data})

    def publish_all(self, stamp: float) -> list[str]:
        """Publish markers and serialized maps to attached consumers; returns the topics sent."""
        if self.store.is_empty():
            return []
        sent: list[str] = []
        if self.has_consumers("markers_bg") or self.has_consumers("markers_fg"):
            bg_markers, fg_markers = self.occupied_markers(stamp)
            if self.publish("markers_bg", bg_markers):
                sent.append("markers_bg")
            if self.publish("markers_fg", fg_markers):
                sent.append("markers_fg")
        if self.has_consumers("markers_free"):
            self.publish("markers_free", self.free_markers(stamp))
            sent.append("markers_free")
        if self.has_consumers("octomap_binary") and self._publish_map("octomap_binary", dump_binary, stamp):
            sent.append("octomap_binary")
        if self.has_consumers("octomap_full") and self._publish_map("octomap_full", dump_full, stamp):
            sent.append("octomap_full")
        return sent
