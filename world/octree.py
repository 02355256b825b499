from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator

import numpy as np
import pyoctomap

TREE_DEPTH = 16
TREE_MAX_VAL = 1 << (TREE_DEPTH - 1)  # 32768
KEY_LIMIT = 1 << TREE_DEPTH

Key = tuple[int, int, int]


def logit(p: float) -> float:
    return float(math.log(p / (1.0 - p)))


@dataclass(frozen=True)
class LeafNode:
    key: Key
    depth: int
    center: tuple[float, float, float]
    size: float
    probability: float

    @property
    def log_odds(self) -> float:
        return logit(self.probability)


class VoxelOctree:
    """
    Probabilistic occupancy octree on top of ``pyoctomap.OcTree``.

    Keys use the octomap layout (depth 16, ``floor(c / res) + 32768`` per axis),
    so key arithmetic is done here in numpy and the tree is addressed by the
    voxel centre of a key. The instance bounding box is bookkeeping kept next
    to the tree; it never limits updates.
    """

    def __init__(
        self,
        resolution: float,
        *,
        prob_hit: float = 0.7,
        prob_miss: float = 0.4,
        clamp_min: float = 0.12,
        clamp_max: float = 0.97,
        occupancy_thres: float = 0.5,
        octree: pyoctomap.OcTree | None = None,
    ) -> None:
        if resolution <= 0.0:
            raise ValueError(f"resolution must be > 0, got {resolution}")
        self.resolution = float(resolution)
        self.prob_hit = float(prob_hit)
        self.prob_miss = float(prob_miss)
        self.clamp_min = float(clamp_min)
        self.clamp_max = float(clamp_max)
        self.occupancy_thres = float(occupancy_thres)

        self._tree = pyoctomap.OcTree(self.resolution) if octree is None else octree
        self._tree.setProbHit(self.prob_hit)
        self._tree.setProbMiss(self.prob_miss)
        self._tree.setClampingThresMin(self.clamp_min)
        self._tree.setClampingThresMax(self.clamp_max)
        self._tree.setOccupancyThres(self.occupancy_thres)

        self._bounds: tuple[np.ndarray, np.ndarray] | None = None
        self._bounds_dirty = True

        self.bbx_min: np.ndarray | None = None
        self.bbx_max: np.ndarray | None = None

    @classmethod
    def wrap(cls, octree: pyoctomap.OcTree, **sensor_model) -> "VoxelOctree":
        """Adopt an existing octomap tree (e.g. one read from a stream)."""
        return cls(float(octree.getResolution()), octree=octree, **sensor_model)

    @property
    def octree(self) -> pyoctomap.OcTree:
        return self._tree

    # ---- keys ----------------------------------------------------------

    def coord_to_key(self, coord) -> Key | None:
        c = np.asarray(coord, dtype=np.float64).reshape(3)
        if not np.all(np.isfinite(c)):
            return None
        k = np.floor(c / self.resolution).astype(np.int64) + TREE_MAX_VAL
        if np.any(k < 0) or np.any(k >= KEY_LIMIT):
            return None
        return (int(k[0]), int(k[1]), int(k[2]))

    def coords_to_keys(self, coords: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Vectorized key computation; returns (keys (N,3) int64, valid mask (N,))."""
        c = np.asarray(coords, dtype=np.float64).reshape(-1, 3)
        finite = np.all(np.isfinite(c), axis=1)
        k = np.zeros(c.shape, dtype=np.int64)
        k[finite] = np.floor(c[finite] / self.resolution).astype(np.int64) + TREE_MAX_VAL
        valid = finite & np.all((k >= 0) & (k < KEY_LIMIT), axis=1)
        return k, valid

    def key_to_coord(self, key: Key, depth: int = TREE_DEPTH) -> np.ndarray:
        k = np.asarray(key, dtype=np.int64)
        if depth >= TREE_DEPTH:
            return (k - TREE_MAX_VAL + 0.5) * self.resolution
        shift = TREE_DEPTH - depth
        base = (k >> shift) << shift
        return (base - TREE_MAX_VAL).astype(np.float64) * self.resolution + self.node_size(depth) / 2.0

    def node_size(self, depth: int) -> float:
        return self.resolution * float(1 << (TREE_DEPTH - depth))

    def _point(self, key: Key) -> list[float]:
        return [float(v) for v in self.key_to_coord(key)]

    # ---- lookup ----------------------------------------------------------

    def search_key(self, key: Key) -> float | None:
        """Occupancy of the deepest node covering `key` (pruned parents included)."""
        node = self._tree.search(self._point(key))
        if node is None:
            return None
        return float(node.getOccupancy())

    def search(self, coord) -> float | None:
        key = self.coord_to_key(coord)
        if key is None:
            return None
        return self.search_key(key)

    def query_many(self, points: np.ndarray) -> np.ndarray:
        """Occupancy probability per point, NaN where unknown."""
        keys, valid = self.coords_to_keys(points)
        out = np.full((keys.shape[0],), np.nan, dtype=np.float64)
        if self.metric_bounds() is None:
            return out
        for i in np.flatnonzero(valid):
            p = self.search_key((int(keys[i, 0]), int(keys[i, 1]), int(keys[i, 2])))
            if p is not None:
                out[i] = p
        return out

    def is_node_occupied(self, prob: float | None) -> bool:
        return prob is not None and prob >= self.occupancy_thres

    def is_key_occupied(self, key: Key) -> bool:
        return self.is_node_occupied(self.search_key(key))

    # ---- updates -----------------------------------------------------------

    def update_node(self, key: Key, occupied: bool, lazy: bool = False) -> None:
        """
        One hit/miss on `key` with the tree's sensor model.

        octomap clamps the log-odds, skips updates already at the clamp and
        expands pruned parents on the way down. With `lazy` set, inner nodes
        are left stale until `update_inner_occupancy()`.
        """
        self._tree.updateNode(self._point(key), bool(occupied), bool(lazy))
        self._bounds_dirty = True

    def update_coord(self, coord, occupied: bool, lazy: bool = False) -> Key | None:
        key = self.coord_to_key(coord)
        if key is None:
            return None
        self.update_node(key, occupied, lazy)
        return key

    def update_inner_occupancy(self) -> None:
        # octomap crashes on an empty tree here.
        if self.num_nodes() > 0:
            self._tree.updateInnerOccupancy()

    def clear(self) -> None:
        self._tree.clear()
        self._bounds = None
        self._bounds_dirty = True
        self.bbx_min = None
        self.bbx_max = None

    # ---- pruning / iteration ---------------------------------------------------

    def prune(self) -> int:
        """Merge uniform sibling groups bottom-up. Returns the number of merges."""
        before = self.num_nodes()
        if before == 0:
            return 0
        self._tree.updateInnerOccupancy()
        self._tree.prune()
        # Every merge folds eight leaves into one.
        return (before - self.num_nodes()) // 7

    def num_nodes(self) -> int:
        return int(self._tree.getNumLeafNodes())

    def __len__(self) -> int:
        return self.num_nodes()

    def iter_leafs(self, max_depth: int = TREE_DEPTH) -> Iterator[LeafNode]:
        """
        Leaves down to `max_depth`. Deeper nodes show up as their ancestor at
        `max_depth`, carrying octomap's inner value (maximum child log-odds).
        """
        max_depth = int(min(max(max_depth, 1), TREE_DEPTH))
        if self.metric_bounds() is None:
            return
        half_voxel = self.resolution / 2.0
        for leaf in self._tree.begin_leafs(max_depth):
            size = float(leaf.getSize())
            center = np.asarray(leaf.getCoordinate(), dtype=np.float64).reshape(3)
            key = self.coord_to_key(center - size / 2.0 + half_voxel)
            if key is None:
                continue
            yield LeafNode(
                key=key,
                depth=int(leaf.getDepth()),
                center=(float(center[0]), float(center[1]), float(center[2])),
                size=size,
                probability=float(leaf.getOccupancy()),
            )

    def metric_bounds(self) -> tuple[np.ndarray, np.ndarray] | None:
        """Axis-aligned extent covered by stored nodes, None for an empty tree."""
        if not self._bounds_dirty:
            return self._bounds
        if self.num_nodes() == 0:
            self._bounds = None
        else:
            lo = np.asarray(self._tree.getMetricMin(), dtype=np.float64).reshape(3)
            hi = np.asarray(self._tree.getMetricMax(), dtype=np.float64).reshape(3)
            self._bounds = (lo, hi)
        self._bounds_dirty = False
        return self._bounds

    def metric_min(self) -> np.ndarray | None:
        bounds = self.metric_bounds()
        return None if bounds is None else bounds[0].copy()

    def metric_max(self) -> np.ndarray | None:
        bounds = self.metric_bounds()
        return None if bounds is None else bounds[1].copy()

    # ---- bounding box ----------------------------------------------------------

    def set_bbx(self, bbx_min, bbx_max) -> None:
        self.bbx_min = np.asarray(bbx_min, dtype=np.float64).reshape(3).copy()
        self.bbx_max = np.asarray(bbx_max, dtype=np.float64).reshape(3).copy()

    def has_bbx(self) -> bool:
        return self.bbx_min is not None and self.bbx_max is not None

    def in_bbx(self, point) -> bool:
        if not self.has_bbx():
            return False
        p = np.asarray(point, dtype=np.float64).reshape(3)
        return bool(np.all(p >= self.bbx_min) and np.all(p <= self.bbx_max))

    def in_bbx_many(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if not self.has_bbx():
            return np.zeros((pts.shape[0],), dtype=bool)
        return np.all((pts >= self.bbx_min) & (pts <= self.bbx_max), axis=1)

    # ---- rays --------------------------------------------------------------------

    def compute_ray_keys(self, origin, end) -> list[Key] | None:
        """
        Keys from the origin voxel up to, but excluding, the end voxel.

        Same 3D-DDA walk as octomap's ``computeRayKeys``. Keys are collected
        for several trees before any of them is updated, so this only walks
        and never touches the tree.
        """
        o = np.asarray(origin, dtype=np.float64).reshape(3)
        e = np.asarray(end, dtype=np.float64).reshape(3)
        key_origin = self.coord_to_key(o)
        key_end = self.coord_to_key(e)
        if key_origin is None or key_end is None:
            return None
        if key_origin == key_end:
            return []

        ray = [key_origin]
        direction = e - o
        length = float(np.linalg.norm(direction))
        direction = direction / length

        step = [0, 0, 0]
        t_max = [math.inf, math.inf, math.inf]
        t_delta = [math.inf, math.inf, math.inf]
        for i in range(3):
            d = float(direction[i])
            if d > 0.0:
                step[i] = 1
            elif d < 0.0:
                step[i] = -1
            if step[i] != 0:
                border = (key_origin[i] - TREE_MAX_VAL + 0.5) * self.resolution + step[i] * self.resolution * 0.5
                t_max[i] = (border - float(o[i])) / d
                t_delta[i] = self.resolution / abs(d)

        current = list(key_origin)
        while True:
            dim = 0
            if t_max[1] < t_max[dim]:
                dim = 1
            if t_max[2] < t_max[dim]:
                dim = 2
            current[dim] += step[dim]
            t_max[dim] += t_delta[dim]
            if tuple(current) == key_end:
                break
            if min(t_max) > length:
                break
            ray.append((current[0], current[1], current[2]))
        return ray

    def _ray_exit(self, origin: np.ndarray, direction: np.ndarray) -> float | None:
        """Distance at which the ray leaves the stored extent (padded by one voxel)."""
        bounds = self.metric_bounds()
        if bounds is None:
            return None
        lo = bounds[0] - self.resolution
        hi = bounds[1] + self.resolution
        t0, t1 = 0.0, math.inf
        for i in range(3):
            d = float(direction[i])
            if abs(d) < 1e-12:
                if origin[i] < lo[i] or origin[i] > hi[i]:
                    return None
                continue
            a = (lo[i] - origin[i]) / d
            b = (hi[i] - origin[i]) / d
            if a > b:
                a, b = b, a
            t0 = max(t0, a)
            t1 = min(t1, b)
            if t0 > t1:
                return None
        return t1

    def cast_ray(
        self,
        origin,
        direction,
        *,
        ignore_unknown: bool = True,
        max_range: float = -1.0,
    ) -> tuple[bool, np.ndarray | None]:
        """
        octomap ``castRay`` from `origin` along `direction`.

        Returns (hit, end) with `end` the centre of the first occupied voxel.
        A non-positive `max_range` means unbounded; the walk is still capped
        where the ray leaves the stored extent since nothing can be hit
        beyond it.
        """
        o = np.asarray(origin, dtype=np.float64).reshape(3)
        d = np.asarray(direction, dtype=np.float64).reshape(3)
        norm = float(np.linalg.norm(d))
        if norm < 1e-12 or self.coord_to_key(o) is None:
            return False, None
        d = d / norm

        exit_t = self._ray_exit(o, d)
        if exit_t is None:
            return False, None
        limit = exit_t + self.resolution
        if max_range > 0.0:
            limit = min(limit, float(max_range))

        end = np.zeros(3, dtype=np.float64)
        hit = self._tree.castRay(o, d, end, bool(ignore_unknown), float(limit))
        if not hit:
            return False, None
        return True, end
