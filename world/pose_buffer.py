from __future__ import annotations

import bisect
import threading
import time

import numpy as np


class PoseBuffer:
    """
    Time-indexed sensor->world transforms with bounded history.

    `wait_for` blocks for at most `timeout` seconds until a pose for the
    requested stamp arrives; callers drop the scan when it returns None.
    """

    def __init__(self, *, cache_s: float = 30.0, tolerance_s: float = 0.0) -> None:
        self.cache_s = float(cache_s)
        self.tolerance_s = float(tolerance_s)
        self._stamps: list[float] = []
        self._poses: list[np.ndarray] = []
        self._cond = threading.Condition()

    def add(self, stamp: float, sensor_to_world: np.ndarray) -> None:
        T = np.asarray(sensor_to_world, dtype=np.float64).reshape(4, 4).copy()
        with self._cond:
            i = bisect.bisect_left(self._stamps, float(stamp))
            if i < len(self._stamps) and self._stamps[i] == float(stamp):
                self._poses[i] = T
            else:
                self._stamps.insert(i, float(stamp))
                self._poses.insert(i, T)
            newest = self._stamps[-1]
            cut = bisect.bisect_left(self._stamps, newest - self.cache_s)
            if cut > 0:
                del self._stamps[:cut]
                del self._poses[:cut]
            self._cond.notify_all()

    def lookup(self, stamp: float) -> np.ndarray | None:
        with self._cond:
            return self._lookup_locked(float(stamp))

    def _lookup_locked(self, stamp: float) -> np.ndarray | None:
        if not self._stamps:
            return None
        i = bisect.bisect_left(self._stamps, stamp)
        best = None
        best_dt = None
        for j in (i - 1, i):
            if 0 <= j < len(self._stamps):
                dt = abs(self._stamps[j] - stamp)
                if best_dt is None or dt < best_dt:
                    best, best_dt = j, dt
        if best is None or best_dt is None or best_dt > self.tolerance_s:
            return None
        return self._poses[best].copy()

    def wait_for(self, stamp: float, timeout: float) -> np.ndarray | None:
        deadline = time.monotonic() + max(0.0, float(timeout))
        with self._cond:
            while True:
                T = self._lookup_locked(float(stamp))
                if T is not None:
                    return T
                remaining = deadline - time.monotonic()
                if remaining <= 0.0:
                    return None
                self._cond.wait(remaining)

    def clear(self) -> None:
        with self._cond:
            self._stamps.clear()
            self._poses.clear()

    def __len__(self) -> int:
        with self._cond:
            return len(self._stamps)
