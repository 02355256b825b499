from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from world.instance_store import BACKGROUND_ID, UNCERTAIN_ID, InstanceStore
from world.octree import VoxelOctree
from world.transform import backproject_pixels, sensor_origin, transform_points

logger = logging.getLogger(__name__)

UNLABELED = UNCERTAIN_ID


class ProjectionError(RuntimeError):
    """The predicted label image could not be produced for this view."""


@dataclass
class ProjectionView:
    sensor_to_world: np.ndarray  # 4x4
    intrinsics: dict  # fx, fy, cx, cy, width, height
    points_world: np.ndarray  # (H, W, 3), NaN where invalid
    depth: np.ndarray | None = None  # (H, W) sensor-frame z, NaN where invalid

    @property
    def shape(self) -> tuple[int, int]:
        return int(self.points_world.shape[0]), int(self.points_world.shape[1])


class Projector(Protocol):
    """Predicts, per pixel, the instance nearest along the pixel ray."""

    def render(self, view: ProjectionView, store: InstanceStore) -> np.ndarray:
        ...


class _LabelZBuffer:
    """Shared depth/label buffers; every write is a locked compare-and-set on one pixel."""

    def __init__(self, height: int, width: int) -> None:
        self.depth = np.full((height, width), np.nan, dtype=np.float64)
        self.labels = np.full((height, width), UNLABELED, dtype=np.int32)
        self._lock = threading.Lock()

    def offer(self, v: int, u: int, distance: float, instance_id: int) -> bool:
        with self._lock:
            d_old = self.depth[v, u]
            if not (np.isnan(d_old) or distance < d_old):
                return False
            self.depth[v, u] = distance
            h, w = self.labels.shape
            v0, v1 = max(v - 1, 0), min(v + 2, h)
            u0, u1 = max(u - 1, 0), min(u + 2, w)
            self.labels[v0:v1, u0:u1] = instance_id
            return True


class RayCastProjector:
    """Local label z-buffer by casting subsampled pixel rays into every object tree."""

    def __init__(self, *, stride: int = 2, num_workers: int = 4) -> None:
        self.stride = max(1, int(stride))
        self.num_workers = max(1, int(num_workers))

    def _sample(self, view: ProjectionView):
        h, w = view.shape
        vs, us = np.meshgrid(
            np.arange(0, h, self.stride, dtype=np.int64),
            np.arange(0, w, self.stride, dtype=np.int64),
            indexing="ij",
        )
        vs = vs.reshape(-1)
        us = us.reshape(-1)
        pts = view.points_world[vs, us].astype(np.float64)
        valid = np.all(np.isfinite(pts), axis=1)

        # Rays for invalid points: the pixel back-projected at unit depth.
        fallback = np.full(pts.shape, np.nan, dtype=np.float64)
        if np.any(~valid):
            cam = backproject_pixels(us[~valid], vs[~valid], view.intrinsics, depth=1.0)
            fallback[~valid] = transform_points(view.sensor_to_world, cam)
        return vs, us, pts, valid, fallback

    def _render_instance(
        self,
        instance_id: int,
        tree: VoxelOctree,
        origin: np.ndarray,
        sample,
        buf: _LabelZBuffer,
    ) -> int:
        vs, us, pts, valid, fallback = sample
        todo = (valid & tree.in_bbx_many(pts)) | ~valid
        hits = 0
        for n in np.flatnonzero(todo):
            if valid[n]:
                target = pts[n]
                direction = target - origin
                max_range = float(np.linalg.norm(direction)) * 1.1
            else:
                target = fallback[n]
                direction = target - origin
                max_range = -1.0
            hit, end = tree.cast_ray(origin, direction, ignore_unknown=True, max_range=max_range)
            if not hit:
                continue
            distance = float(np.linalg.norm(end - origin))
            if buf.offer(int(vs[n]), int(us[n]), distance, instance_id):
                hits += 1
        return hits

    def render(self, view: ProjectionView, store: InstanceStore) -> np.ndarray:
        h, w = view.shape
        buf = _LabelZBuffer(h, w)
        instance_ids = [iid for iid in store.ids() if iid != BACKGROUND_ID]
        if not instance_ids:
            return buf.labels

        origin = sensor_origin(view.sensor_to_world)
        sample = self._sample(view)
        with ThreadPoolExecutor(max_workers=self.num_workers) as executor:
            futures = {
                iid: executor.submit(self._render_instance, iid, store.get(iid), origin, sample, buf)
                for iid in instance_ids
            }
            for iid, fut in futures.items():
                n = fut.result()
                logger.debug("instance %d rendered into %d pixels", iid, n)
        return buf.labels
