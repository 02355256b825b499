from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
from scipy.sparse import coo_matrix

from world.instance_store import BACKGROUND_ID, UNCERTAIN_ID

logger = logging.getLogger(__name__)


@dataclass
class TrackingResult:
    # transient id -> persistent id
    id_map: dict[int, int] = field(default_factory=dict)
    # persistent id -> class id (this frame first, then previously known)
    class_table: dict[int, int] = field(default_factory=dict)
    new_ids: list[int] = field(default_factory=list)


def _overlap_table(target: np.ndarray, reference: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Pairwise IoU between every object label of `target` and of `reference`.

    Returns (target_ids, reference_ids, iou[len(target_ids), len(reference_ids)]).
    """
    t = target.reshape(-1)
    r = reference.reshape(-1)
    t_ids = np.unique(t[t >= 0])
    r_ids = np.unique(r[r >= 0])
    if t_ids.size == 0 or r_ids.size == 0:
        return t_ids, r_ids, np.zeros((t_ids.size, r_ids.size), dtype=np.float64)

    t_idx = np.searchsorted(t_ids, t)
    r_idx = np.searchsorted(r_ids, r)
    both = (t >= 0) & (r >= 0)
    inter = coo_matrix(
        (np.ones(int(both.sum()), dtype=np.int64), (t_idx[both], r_idx[both])),
        shape=(t_ids.size, r_ids.size),
    ).toarray()
    t_area = np.bincount(t_idx[t >= 0], minlength=t_ids.size).astype(np.float64)
    r_area = np.bincount(r_idx[r >= 0], minlength=r_ids.size).astype(np.float64)
    union = t_area[:, None] + r_area[None, :] - inter
    iou = np.where(union > 0, inter / np.maximum(union, 1.0), 0.0)
    return t_ids, r_ids, iou


class IdentityTracker:
    """
    Resolves per-frame segmentation ids to persistent instance ids.

    A transient region reuses a persistent id when exactly one predicted
    instance overlaps it above `association_threshold` (IoU); otherwise it gets
    a fresh id from a counter that only grows until `reset()`.
    """

    def __init__(self, association_threshold: float = 0.5) -> None:
        self.association_threshold = float(association_threshold)
        self._counter = 0

    @property
    def next_id(self) -> int:
        return self._counter

    def reset(self) -> None:
        self._counter = 0

    def _allocate(self) -> int:
        iid = self._counter
        self._counter += 1
        return iid

    def track(
        self,
        reference: np.ndarray,
        target: np.ndarray,
        class_table: dict[int, int],
        known_classes: dict[int, int] | None = None,
    ) -> TrackingResult:
        """Rewrite `target` in place to persistent ids."""
        reference = np.asarray(reference)
        if reference.shape != target.shape:
            raise ValueError(f"reference shape {reference.shape} != target shape {target.shape}")

        t_ids, r_ids, iou = _overlap_table(target, reference)
        result = TrackingResult()

        candidates: list[tuple[float, int, int | None]] = []
        for i, tid in enumerate(t_ids.tolist()):
            matches = np.flatnonzero(iou[i] > self.association_threshold) if r_ids.size else np.zeros(0, dtype=np.int64)
            if matches.size == 1:
                candidates.append((float(iou[i, matches[0]]), int(tid), int(r_ids[matches[0]])))
            else:
                candidates.append((0.0, int(tid), None))

        claimed: set[int] = set()
        for score, tid, rid in sorted(candidates, key=lambda c: (-c[0], c[1])):
            if rid is not None and rid not in claimed:
                claimed.add(rid)
                result.id_map[tid] = rid
            else:
                pid = self._allocate()
                result.id_map[tid] = pid
                result.new_ids.append(pid)

        relabeled = target.copy()
        for tid, pid in result.id_map.items():
            relabeled[target == tid] = pid
        target[...] = relabeled

        for tid, pid in result.id_map.items():
            if tid in class_table:
                result.class_table[pid] = int(class_table[tid])
            else:
                logger.warning("transient id %d has no class entry", tid)
        for pid, cid in (known_classes or {}).items():
            if pid in (BACKGROUND_ID, UNCERTAIN_ID):
                continue
            result.class_table.setdefault(int(pid), int(cid))

        if result.new_ids:
            logger.info("allocated instance ids %s", result.new_ids)
        return result
