from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Literal

import numpy as np

from config.load_config import AppConfig
from export.grids import GridExporter, VoxelGrid
from export.map_publisher import MapPublisher
from observability import metrics
from perception.identity_tracker import IdentityTracker
from world.instance_store import UNCERTAIN_ID, InstanceStore
from world.pose_buffer import PoseBuffer
from world.projector import ProjectionError, ProjectionView, Projector, RayCastProjector
from world.render_client import RenderServiceProjector
from world.scan_inserter import InsertionStats, ScanInserter, UnknownInstanceError
from world.transform import invert_transform, sensor_origin, transform_points

logger = logging.getLogger(__name__)

ScanStatus = Literal["inserted", "stale", "no_pose", "render_failed"]


@dataclass
class Scan:
    timestamp: float
    intrinsics: dict
    points: np.ndarray  # (H, W, 3), NaN where invalid
    labels: np.ndarray  # (H, W) transient instance ids
    class_table: dict[int, int]  # transient id -> class id
    sensor_to_world: np.ndarray | None = None
    points_frame: Literal["sensor", "world"] = "sensor"


@dataclass
class ScanResult:
    status: ScanStatus
    stats: InsertionStats | None = None
    id_map: dict[int, int] = field(default_factory=dict)
    label_rendered: np.ndarray | None = None
    label_tracked: np.ndarray | None = None
    grids: list[VoxelGrid] = field(default_factory=list)
    grids_noentry: list[VoxelGrid] = field(default_factory=list)


def build_projector(config: AppConfig, exporter: GridExporter) -> Projector:
    if config.render.use_render_service:
        return RenderServiceProjector(config.render.url, timeout=config.render.timeout_s, exporter=exporter)
    return RayCastProjector(stride=config.mapping.subsample_stride, num_workers=config.mapping.num_workers)


class MappingServer:
    """
    Runs the per-scan pipeline (predict, track, insert, export, publish).

    One lock guards all map state, so scans are processed strictly one at a
    time and `reset()` never interleaves with a scan.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        projector: Projector | None = None,
        pose_buffer: PoseBuffer | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or AppConfig()
        cfg = self.config
        self.clock = clock

        self.store = InstanceStore(resolution=cfg.mapping.resolution, sensor_model=cfg.sensor_model)
        self.tracker = IdentityTracker(association_threshold=cfg.tracking.association_threshold)
        self.inserter = ScanInserter(
            self.store,
            max_range=cfg.mapping.max_range,
            stride=cfg.mapping.subsample_stride,
            num_workers=cfg.mapping.num_workers,
            compress_map=cfg.mapping.compress_map,
            pitch_overrides=cfg.classes.pitch_overrides,
            default_pitch=cfg.classes.default_pitch,
        )
        self.exporter = GridExporter(
            prob_max=cfg.sensor_model.max,
            ground_as_noentry=cfg.noentry.ground_as_noentry,
            free_as_noentry=cfg.noentry.free_as_noentry,
            occupancy_threshold=cfg.noentry.occupancy_threshold,
        )
        self.publisher = MapPublisher(
            self.store,
            frame_id=cfg.publish.frame_id,
            filter_speckles=cfg.publish.filter_speckles,
        )
        self.projector = projector or build_projector(cfg, self.exporter)
        self.poses = pose_buffer or PoseBuffer(cache_s=cfg.pose.cache_s, tolerance_s=cfg.pose.tolerance_s)

        self._lock = threading.Lock()
        self.reset_stamp = float(self.clock())
        # Sensor-frame grids of the last inserted scan: (stamp, grids, no-entry grids)
        self._last_grids: tuple[float, list[VoxelGrid], list[VoxelGrid]] | None = None

    # ---- control -----------------------------------------------------------------

    def reset(self) -> float:
        with self._lock:
            self.store.clear()
            self.tracker.reset()
            self._last_grids = None
            self.reset_stamp = float(self.clock())
        metrics.RESETS_TOTAL.inc()
        metrics.INSTANCES.set(0)
        logger.info("map reset", extra={"reset_stamp": self.reset_stamp})
        return self.reset_stamp

    def set_noentry(self, *, ground: bool | None = None, free: bool | None = None) -> dict[str, bool]:
        with self._lock:
            if ground is not None:
                self.exporter.ground_as_noentry = bool(ground)
            if free is not None:
                self.exporter.free_as_noentry = bool(free)
            return {
                "ground_as_noentry": self.exporter.ground_as_noentry,
                "free_as_noentry": self.exporter.free_as_noentry,
            }

    # ---- queries -------------------------------------------------------------------

    def world_grids(self) -> list[VoxelGrid]:
        with self._lock:
            return self.exporter.world_grids(self.store)

    def sensor_grids(self, sensor_to_world: np.ndarray) -> tuple[list[VoxelGrid], list[VoxelGrid]]:
        with self._lock:
            return self.exporter.sensor_grids(self.store, sensor_to_world)

    def last_sensor_grids(self) -> tuple[float, list[VoxelGrid], list[VoxelGrid]] | None:
        with self._lock:
            return self._last_grids

    def class_summary(self) -> list[dict]:
        with self._lock:
            return self.store.class_summary()

    def markers(self, kind: str) -> list[dict]:
        """Current cube-list markers; kind is one of bg, fg, free."""
        if kind not in ("bg", "fg", "free"):
            raise ValueError(f"unknown marker kind: {kind}")
        with self._lock:
            stamp = float(self.clock())
            if kind == "free":
                return self.publisher.free_markers(stamp)
            bg, fg = self.publisher.occupied_markers(stamp)
            return bg if kind == "bg" else fg

    # ---- pipeline ------------------------------------------------------------------

    def _resolve_pose(self, scan: Scan) -> np.ndarray | None:
        if scan.sensor_to_world is not None:
            return np.asarray(scan.sensor_to_world, dtype=np.float64).reshape(4, 4)
        return self.poses.wait_for(scan.timestamp, self.config.pose.wait_timeout_s)

    def _view(self, scan: Scan, T: np.ndarray) -> ProjectionView:
        points = np.asarray(scan.points, dtype=np.float64)
        if scan.points_frame == "sensor":
            points_sensor = points
            points_world = transform_points(T, points)
        else:
            points_world = points
            points_sensor = transform_points(invert_transform(T), points)
        return ProjectionView(
            sensor_to_world=T,
            intrinsics=dict(scan.intrinsics),
            points_world=points_world,
            depth=points_sensor[..., 2].astype(np.float32),
        )

    def process_scan(self, scan: Scan) -> ScanResult:
        labels = np.asarray(scan.labels)
        if labels.shape != np.asarray(scan.points).shape[:2]:
            raise ValueError(f"labels {labels.shape} do not match points layout {np.asarray(scan.points).shape[:2]}")
        if labels.size and int(labels.min()) < UNCERTAIN_ID:
            raise ValueError(f"invalid instance label {int(labels.min())} in scan")

        with self._lock:
            if scan.timestamp < self.reset_stamp:
                metrics.SCANS_TOTAL.labels("stale").inc()
                return ScanResult(status="stale")

            T = self._resolve_pose(scan)
            if T is None:
                logger.info("no pose for scan at %.6f, dropping", scan.timestamp)
                metrics.SCANS_TOTAL.labels("no_pose").inc()
                return ScanResult(status="no_pose")

            view = self._view(scan, T)
            stamp = float(scan.timestamp)

            with metrics.StageTimer("project"):
                try:
                    rendered = self.projector.render(view, self.store)
                except ProjectionError as exc:
                    logger.warning("projection failed, dropping scan: %s", exc)
                    metrics.SCANS_TOTAL.labels("render_failed").inc()
                    return ScanResult(status="render_failed")
            self.publisher.publish("label_rendered", rendered)

            tracked = labels.astype(np.int32).copy()
            with metrics.StageTimer("track"):
                tracking = self.tracker.track(rendered, tracked, scan.class_table, self.store.class_table())
            self.publisher.publish("label_tracked", tracked)
            self.publisher.publish("class", self.store.class_summary())

            with metrics.StageTimer("insert"):
                try:
                    stats = self.inserter.insert(sensor_origin(T), view.points_world, tracked, tracking.class_table)
                except UnknownInstanceError:
                    metrics.SCANS_TOTAL.labels("protocol_violation").inc()
                    raise

            with metrics.StageTimer("export"):
                grids, grids_noentry = self.exporter.sensor_grids(self.store, T)
            self._last_grids = (stamp, grids, grids_noentry)
            header = {"frame_id": self.config.publish.sensor_frame_id, "stamp": stamp}
            self.publisher.publish("grids", {**header, "grids": [g.to_dict() for g in grids]})
            self.publisher.publish("grids_noentry", {**header, "grids": [g.to_dict() for g in grids_noentry]})

            with metrics.StageTimer("publish"):
                self.publisher.publish_all(stamp)

            metrics.SCANS_TOTAL.labels("inserted").inc()
            metrics.INSTANCES.set(len(self.store))
            logger.debug(
                "scan inserted",
                extra={"stamp": stamp, "points": stats.points, "new_ids": stats.new_instance_ids},
            )
            return ScanResult(
                status="inserted",
                stats=stats,
                id_map=tracking.id_map,
                label_rendered=rendered,
                label_tracked=tracked,
                grids=grids,
                grids_noentry=grids_noentry,
            )
