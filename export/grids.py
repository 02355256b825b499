from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from world.instance_store import BACKGROUND_ID, InstanceStore
from world.transform import invert_transform, transform_points

logger = logging.getLogger(__name__)

GRID_DIM = 32

# Probabilities come back from log-odds through exp(); compare thresholds with slack.
_PROB_EPS = 1e-6


@dataclass
class VoxelGrid:
    instance_id: int
    class_id: int
    pitch: float
    origin: tuple[float, float, float]
    dims: tuple[int, int, int] = (GRID_DIM, GRID_DIM, GRID_DIM)
    indices: list[int] = field(default_factory=list)
    values: list[float] = field(default_factory=list)

    @property
    def size(self) -> int:
        return int(self.dims[0] * self.dims[1] * self.dims[2])

    def dense(self) -> np.ndarray:
        out = np.zeros(self.dims, dtype=np.float32)
        if self.indices:
            out.reshape(-1)[np.asarray(self.indices, dtype=np.int64)] = np.asarray(self.values, dtype=np.float32)
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": int(self.instance_id),
            "class_id": int(self.class_id),
            "pitch": float(self.pitch),
            "dims": [int(d) for d in self.dims],
            "origin": [float(x) for x in self.origin],
            "indices": [int(i) for i in self.indices],
            "values": [float(v) for v in self.values],
        }


def _cell_offsets(dims: tuple[int, int, int]) -> np.ndarray:
    # Row-major (i, j, k) so that linear index = i*dy*dz + j*dz + k.
    return np.indices(dims, dtype=np.float64).reshape(3, -1).T


def _known(values: np.ndarray) -> np.ndarray:
    return ~np.isnan(values)


class GridExporter:
    """
    Dense fixed-size voxel grids per object instance.

    World-frame grids carry raw occupancy. Sensor-frame grids come in pairs:
    the instance's own occupancy and the cells it must not enter (ground,
    observed free space, other instances' territory).
    """

    def __init__(
        self,
        *,
        prob_max: float = 0.97,
        ground_as_noentry: bool = True,
        free_as_noentry: bool = True,
        occupancy_threshold: float | None = None,
        dims: tuple[int, int, int] = (GRID_DIM, GRID_DIM, GRID_DIM),
    ) -> None:
        self.prob_max = float(prob_max)
        self.ground_as_noentry = bool(ground_as_noentry)
        self.free_as_noentry = bool(free_as_noentry)
        self.occupancy_threshold = float(prob_max if occupancy_threshold is None else occupancy_threshold)
        self.dims = tuple(int(d) for d in dims)
        self._offsets = _cell_offsets(self.dims)

    def _origin(self, center: np.ndarray, pitch: float) -> np.ndarray:
        half = np.asarray(self.dims, dtype=np.float64) / 2.0 - 0.5
        return np.asarray(center, dtype=np.float64).reshape(3) - half * pitch

    def _instances(self, store: InstanceStore):
        for iid in store.object_ids():
            center = store.centroid(iid)
            cid = store.class_id(iid)
            if center is None or cid is None:
                logger.debug("instance %d has no centroid yet, skipping grid", iid)
                continue
            yield iid, cid, store.get(iid), center

    def world_grids(self, store: InstanceStore) -> list[VoxelGrid]:
        grids: list[VoxelGrid] = []
        for iid, cid, tree, center in self._instances(store):
            pitch = tree.resolution
            origin = self._origin(center, pitch)
            occ = tree.query_many(origin + self._offsets * pitch)
            mask = _known(occ)
            mask[mask] = occ[mask] > 0.5
            idx = np.flatnonzero(mask)
            grids.append(
                VoxelGrid(
                    instance_id=iid,
                    class_id=int(cid),
                    pitch=pitch,
                    origin=(float(origin[0]), float(origin[1]), float(origin[2])),
                    dims=self.dims,
                    indices=idx.tolist(),
                    values=occ[idx].tolist(),
                )
            )
        return grids

    def sensor_grids(
        self,
        store: InstanceStore,
        sensor_to_world: np.ndarray,
    ) -> tuple[list[VoxelGrid], list[VoxelGrid]]:
        """Returns (occupancy grids, noentry grids) laid out in the sensor frame."""
        if store.is_empty():
            return [], []
        T = np.asarray(sensor_to_world, dtype=np.float64).reshape(4, 4)
        world_to_sensor = invert_transform(T)
        tree_ids = store.ids()

        grids: list[VoxelGrid] = []
        grids_noentry: list[VoxelGrid] = []
        for iid, cid, tree, center in self._instances(store):
            pitch = tree.resolution
            origin = self._origin(transform_points(world_to_sensor, center), pitch)
            pts_world = transform_points(T, origin + self._offsets * pitch)

            n = pts_world.shape[0]
            decided = np.zeros(n, dtype=bool)
            noentry = np.full(n, np.nan, dtype=np.float64)

            if self.ground_as_noentry:
                ground = pts_world[:, 2] < 0.0
                noentry[ground] = self.prob_max
                decided |= ground

            own = tree.query_many(pts_world)
            occupied = ~decided & _known(own)
            occupied[occupied] = own[occupied] > 0.5
            decided |= occupied

            for oid in tree_ids:
                if oid == iid:
                    continue
                other = store.get(oid).query_many(pts_world)
                open_ = ~decided & _known(other)
                if oid == BACKGROUND_ID and self.free_as_noentry:
                    free = open_.copy()
                    free[free] = other[free] < 0.5
                    noentry[free] = 1.0 - other[free]
                    decided |= free
                    open_ &= ~free
                high = open_.copy()
                high[high] = other[high] >= self.occupancy_threshold - _PROB_EPS
                noentry[high] = other[high]
                decided |= high

            occ_idx = np.flatnonzero(occupied)
            ne_idx = np.flatnonzero(_known(noentry))
            origin_t = (float(origin[0]), float(origin[1]), float(origin[2]))
            grids.append(
                VoxelGrid(
                    instance_id=iid,
                    class_id=int(cid),
                    pitch=pitch,
                    origin=origin_t,
                    dims=self.dims,
                    indices=occ_idx.tolist(),
                    values=own[occ_idx].tolist(),
                )
            )
            grids_noentry.append(
                VoxelGrid(
                    instance_id=iid,
                    class_id=int(cid),
                    pitch=pitch,
                    origin=origin_t,
                    dims=self.dims,
                    indices=ne_idx.tolist(),
                    values=noentry[ne_idx].tolist(),
                )
            )
        return grids, grids_noentry
