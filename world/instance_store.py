from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

import numpy as np

from config.load_config import SensorModelCfg
from world.object_classes import class_name
from world.octree import VoxelOctree

BACKGROUND_ID = -1
UNCERTAIN_ID = -2


@dataclass
class InstanceRecord:
    instance_id: int
    class_id: int | None
    tree: VoxelOctree
    centroid: np.ndarray | None = None


class InstanceStore:
    """
    Owns one VoxelOctree per instance id plus class id and centroid side tables.

    Entries are append-only; they disappear only through `clear()`. Trees are
    referenced by id from the outside, never handed over for ownership.
    """

    def __init__(self, *, resolution: float, sensor_model: SensorModelCfg | None = None) -> None:
        self.resolution = float(resolution)
        self.sensor_model = sensor_model or SensorModelCfg()
        self._records: dict[int, InstanceRecord] = {}

    def _new_tree(self, pitch: float) -> VoxelOctree:
        sm = self.sensor_model
        return VoxelOctree(
            pitch,
            prob_hit=sm.hit,
            prob_miss=sm.miss,
            clamp_min=sm.min,
            clamp_max=sm.max,
        )

    def ensure(self, instance_id: int, class_id: int | None = None, pitch: float | None = None) -> tuple[VoxelOctree, bool]:
        """Return (tree, created). Pitch and class of an existing entry never change."""
        instance_id = int(instance_id)
        if instance_id == UNCERTAIN_ID:
            raise ValueError("uncertain instance id -2 is never materialized")
        if instance_id < UNCERTAIN_ID:
            raise ValueError(f"invalid instance id {instance_id}")
        rec = self._records.get(instance_id)
        if rec is not None:
            return rec.tree, False
        if instance_id == BACKGROUND_ID:
            tree = self._new_tree(self.resolution)
            class_id = None
        else:
            if class_id is None or pitch is None:
                raise ValueError(f"instance {instance_id} needs class_id and pitch on creation")
            tree = self._new_tree(float(pitch))
        self._records[instance_id] = InstanceRecord(instance_id=instance_id, class_id=class_id, tree=tree)
        return tree, True

    def get(self, instance_id: int) -> VoxelOctree | None:
        rec = self._records.get(int(instance_id))
        return None if rec is None else rec.tree

    def __contains__(self, instance_id: object) -> bool:
        return isinstance(instance_id, (int, np.integer)) and int(instance_id) in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[tuple[int, VoxelOctree]]:
        for iid in self.ids():
            yield iid, self._records[iid].tree

    def is_empty(self) -> bool:
        return not self._records

    def ids(self) -> list[int]:
        return sorted(self._records)

    def object_ids(self) -> list[int]:
        return [i for i in self.ids() if i != BACKGROUND_ID]

    @property
    def background(self) -> VoxelOctree | None:
        return self.get(BACKGROUND_ID)

    def class_id(self, instance_id: int) -> int | None:
        rec = self._records.get(int(instance_id))
        return None if rec is None else rec.class_id

    def class_table(self) -> dict[int, int]:
        return {iid: rec.class_id for iid, rec in self._records.items() if rec.class_id is not None}

    def centroid(self, instance_id: int) -> np.ndarray | None:
        rec = self._records.get(int(instance_id))
        return None if rec is None or rec.centroid is None else rec.centroid.copy()

    def set_centroid(self, instance_id: int, centroid) -> None:
        rec = self._records[int(instance_id)]
        rec.centroid = np.asarray(centroid, dtype=np.float64).reshape(3).copy()

    def class_summary(self) -> list[dict]:
        out: list[dict] = []
        for iid in self.object_ids():
            cid = self._records[iid].class_id
            if cid is None:
                continue
            out.append({"instance_id": iid, "class_id": int(cid), "class_name": class_name(cid), "confidence": 1.0})
        return out

    def prune_all(self) -> None:
        for rec in self._records.values():
            rec.tree.prune()

    def clear(self) -> None:
        self._records.clear()
