from __future__ import annotations

import logging

import numpy as np
import requests

from contracts.array_codec import decode_array, encode_array
from export.grids import GridExporter
from world.instance_store import InstanceStore
from world.projector import ProjectionError, ProjectionView

logger = logging.getLogger(__name__)


class RenderServiceProjector:
    """
    Delegates label prediction to an external render service.

    Request: sensor->world transform, camera info, depth image and the
    world-frame grids of every instance. Reply: {"label_ins": <array>}.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 2.0,
        exporter: GridExporter | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.timeout = float(timeout)
        self.exporter = exporter or GridExporter()
        self.session = session or requests.Session()

    def _payload(self, view: ProjectionView, store: InstanceStore) -> dict:
        h, w = view.shape
        depth = view.depth
        if depth is None:
            depth = np.full((h, w), np.nan, dtype=np.float32)
        return {
            "transform": np.asarray(view.sensor_to_world, dtype=np.float64).tolist(),
            "camera_info": dict(view.intrinsics),
            "depth": encode_array(np.asarray(depth, dtype=np.float32)),
            "grids": [g.to_dict() for g in self.exporter.world_grids(store)],
        }

    def render(self, view: ProjectionView, store: InstanceStore) -> np.ndarray:
        try:
            res = self.session.post(self.url, json=self._payload(view, store), timeout=self.timeout)
            res.raise_for_status()
            body = res.json()
        except requests.RequestException as exc:
            logger.warning("render service %s failed: %s", self.url, exc)
            raise ProjectionError(f"render service request failed: {exc}") from exc
        except ValueError as exc:
            raise ProjectionError(f"render service returned invalid JSON: {exc}") from exc

        try:
            labels = decode_array(body["label_ins"]).astype(np.int32)
        except (KeyError, TypeError, ValueError) as exc:
            raise ProjectionError(f"render service reply malformed: {exc}") from exc
        if labels.shape != view.shape:
            raise ProjectionError(f"render service label shape {labels.shape} != {view.shape}")
        return labels
