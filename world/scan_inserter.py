from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np

from world.instance_store import BACKGROUND_ID, UNCERTAIN_ID, InstanceStore
from world.object_classes import class_id_to_voxel_pitch
from world.octree import Key

logger = logging.getLogger(__name__)


class UnknownInstanceError(RuntimeError):
    """A persistent instance id reached insertion without a class entry."""

    def __init__(self, instance_id: int) -> None:
        super().__init__(f"instance id {instance_id} has no class entry")
        self.instance_id = int(instance_id)


@dataclass
class InsertionStats:
    points: int = 0
    free_cells: int = 0
    occupied_cells: dict[int, int] = field(default_factory=dict)
    new_instance_ids: list[int] = field(default_factory=list)
    updated_instance_ids: list[int] = field(default_factory=list)


class _KeyAccumulator:
    """Free/occupied key sets shared by classification workers."""

    def __init__(self, instance_ids: list[int]) -> None:
        self.free_bg: set[Key] = set()
        self.occupied: dict[int, set[Key]] = {iid: set() for iid in instance_ids}
        self._lock = threading.Lock()

    def add_free(self, keys) -> None:
        with self._lock:
            self.free_bg.update(keys)

    def add_occupied(self, instance_id: int, key: Key) -> None:
        with self._lock:
            self.occupied[instance_id].add(key)


class ScanInserter:
    """
    Integrates one registered scan into every instance tree.

    Rays from the sensor carve free space in the background tree, endpoints
    become hits in the tree of the instance they are labelled with. Object
    endpoints also count as free background so objects punch through it.
    """

    def __init__(
        self,
        store: InstanceStore,
        *,
        max_range: float = -1.0,
        stride: int = 2,
        num_workers: int = 4,
        compress_map: bool = False,
        pitch_overrides: dict[int, float] | None = None,
        default_pitch: float = 0.01,
    ) -> None:
        self.store = store
        self.max_range = float(max_range)
        self.stride = max(1, int(stride))
        self.num_workers = max(1, int(num_workers))
        self.compress_map = bool(compress_map)
        self.pitch_overrides = dict(pitch_overrides or {})
        self.default_pitch = float(default_pitch)

    def _sample(self, points_world: np.ndarray, labels: np.ndarray):
        h, w = labels.shape
        if points_world.shape[:2] != (h, w):
            raise ValueError(f"points {points_world.shape[:2]} and labels {(h, w)} differ in layout")
        pts = points_world[:: self.stride, :: self.stride].reshape(-1, 3).astype(np.float64)
        lbl = labels[:: self.stride, :: self.stride].reshape(-1).astype(np.int64)
        keep = np.all(np.isfinite(pts), axis=1) & (lbl != UNCERTAIN_ID)
        return pts[keep], lbl[keep]

    def _classify(
        self,
        origin: np.ndarray,
        pts: np.ndarray,
        lbl: np.ndarray,
        acc: _KeyAccumulator,
    ) -> None:
        bg = self.store.background
        for p, iid in zip(pts, lbl.tolist()):
            dist = float(np.linalg.norm(p - origin))
            if self.max_range < 0.0 or dist <= self.max_range:
                ray = bg.compute_ray_keys(origin, p)
                if ray:
                    acc.add_free(ray)
                key = self.store.get(iid).coord_to_key(p)
                if key is not None:
                    acc.add_occupied(iid, key)
                if iid != BACKGROUND_ID:
                    bg_key = bg.coord_to_key(p)
                    if bg_key is not None:
                        acc.add_free((bg_key,))
            else:
                end = origin + (p - origin) / dist * self.max_range
                ray = bg.compute_ray_keys(origin, end)
                if ray:
                    acc.add_free(ray)

    def insert(
        self,
        sensor_origin: np.ndarray,
        points_world: np.ndarray,
        labels: np.ndarray,
        class_table: dict[int, int],
    ) -> InsertionStats:
        """
        points_world: (H, W, 3) world frame, NaN where invalid.
        labels: (H, W) persistent instance ids.
        class_table: persistent id -> class id.
        """
        origin = np.asarray(sensor_origin, dtype=np.float64).reshape(3)
        pts, lbl = self._sample(np.asarray(points_world), np.asarray(labels))
        instance_ids = sorted(set(lbl.tolist()))

        for iid in instance_ids:
            if iid < UNCERTAIN_ID:
                raise ValueError(f"invalid instance label {iid} in scan")
            if iid >= 0 and iid not in class_table:
                logger.critical("instance id %d missing from class table, aborting insertion", iid)
                raise UnknownInstanceError(iid)

        stats = InsertionStats(points=int(pts.shape[0]))
        new_ids: set[int] = set()
        _, created = self.store.ensure(BACKGROUND_ID)
        if created:
            new_ids.add(BACKGROUND_ID)
        for iid in instance_ids:
            if iid == BACKGROUND_ID:
                continue
            cid = int(class_table[iid])
            pitch = class_id_to_voxel_pitch(cid, self.pitch_overrides, self.default_pitch)
            _, created = self.store.ensure(iid, class_id=cid, pitch=pitch)
            if created:
                new_ids.add(iid)
        stats.new_instance_ids = sorted(new_ids)
        if pts.shape[0] == 0:
            return stats

        acc = _KeyAccumulator(sorted(set(instance_ids) | {BACKGROUND_ID}))
        chunks = np.array_split(np.arange(pts.shape[0]), min(self.num_workers, pts.shape[0]))
        with ThreadPoolExecutor(max_workers=self.num_workers) as executor:
            futures = [executor.submit(self._classify, origin, pts[c], lbl[c], acc) for c in chunks if c.size]
            for fut in futures:
                fut.result()

        bg = self.store.background
        occupied_bg = acc.occupied[BACKGROUND_ID]
        for key in acc.free_bg:
            if key not in occupied_bg:
                bg.update_node(key, False, lazy=True)
        for key in occupied_bg:
            bg.update_node(key, True, lazy=True)
        bg.update_inner_occupancy()

        def _apply_hits(iid: int) -> None:
            tree = self.store.get(iid)
            for key in acc.occupied[iid]:
                tree.update_node(key, True, lazy=True)
            tree.update_inner_occupancy()

        object_ids = [iid for iid in acc.occupied if iid != BACKGROUND_ID]
        with ThreadPoolExecutor(max_workers=self.num_workers) as executor:
            for fut in [executor.submit(_apply_hits, iid) for iid in object_ids]:
                fut.result()

        stats.free_cells = len(acc.free_bg)
        stats.occupied_cells = {iid: len(keys) for iid, keys in acc.occupied.items()}

        for iid in instance_ids:
            self._update_extent(iid, pts[lbl == iid], iid in new_ids)
        stats.updated_instance_ids = list(instance_ids)

        if self.compress_map:
            self.store.prune_all()
        return stats

    def _update_extent(self, instance_id: int, pts: np.ndarray, is_new: bool) -> None:
        if pts.shape[0] == 0:
            return
        tree = self.store.get(instance_id)
        lo = pts.min(axis=0)
        hi = pts.max(axis=0)
        if not is_new and tree.has_bbx():
            lo = np.minimum(lo, tree.bbx_min)
            hi = np.maximum(hi, tree.bbx_max)
        tree.set_bbx(lo, hi)
        # Latest observation only, not a running mean.
        self.store.set_centroid(instance_id, pts.mean(axis=0))
