from __future__ import annotations

import logging

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from contracts.array_codec import array_from_bytes
from contracts.scan_packet import NoEntryUpdate, PoseStamped, ScanMeta
from world.mapping_server import Scan
from world.scan_inserter import UnknownInstanceError
from world.transform import pose_to_matrix

logger = logging.getLogger(__name__)

router = APIRouter(tags=["scan"])

_DROPPED = {"stale": "STALE", "no_pose": "NO_POSE", "render_failed": "RENDER_FAILED"}


@router.post("/scan")
async def post_scan(
    request: Request,
    meta: UploadFile = File(...),
    points: UploadFile = File(...),
    labels: UploadFile = File(...),
) -> dict:
    server = request.app.state.runtime.server
    try:
        meta_payload = ScanMeta.model_validate_json(await meta.read())
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"status": "INVALID_META", "errors": exc.errors(include_url=False, include_context=False)},
        ) from exc

    h, w = meta_payload.intrinsics.height, meta_payload.intrinsics.width
    errors: list[dict] = []
    try:
        pts = array_from_bytes(await points.read(), "<f4", (h, w, 3))
    except ValueError as exc:
        errors.append({"field": "points", "code": "BAD_SIZE", "msg": str(exc)})
    try:
        lbl = array_from_bytes(await labels.read(), "<i4", (h, w))
    except ValueError as exc:
        errors.append({"field": "labels", "code": "BAD_SIZE", "msg": str(exc)})
    if errors:
        raise HTTPException(status_code=400, detail={"status": "INVALID_SCAN", "errors": errors})

    scan = Scan(
        timestamp=meta_payload.timestamp,
        intrinsics=meta_payload.intrinsics.model_dump(),
        points=pts,
        labels=lbl,
        class_table=meta_payload.class_table(),
        sensor_to_world=pose_to_matrix(meta_payload.pose.model_dump()) if meta_payload.pose else None,
        points_frame=meta_payload.points_frame,
    )

    try:
        result = await run_in_threadpool(server.process_scan, scan)
    except UnknownInstanceError as exc:
        logger.critical("protocol violation: %s", exc)
        raise HTTPException(
            status_code=422,
            detail={"status": "PROTOCOL_VIOLATION", "instance_id": exc.instance_id, "msg": str(exc)},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"status": "INVALID_SCAN", "msg": str(exc)}) from exc

    if result.status in _DROPPED:
        return {"status": _DROPPED[result.status], "timestamp": scan.timestamp}

    stats = result.stats
    return {
        "status": "OK",
        "timestamp": scan.timestamp,
        "points": stats.points,
        "free_cells": stats.free_cells,
        "occupied_cells": {str(k): v for k, v in stats.occupied_cells.items()},
        "new_instance_ids": stats.new_instance_ids,
        "updated_instance_ids": stats.updated_instance_ids,
        "id_map": {str(k): v for k, v in result.id_map.items()},
        "grids": len(result.grids),
        "grids_noentry": len(result.grids_noentry),
    }


@router.post("/tf")
def post_tf(request: Request, payload: PoseStamped) -> dict:
    server = request.app.state.runtime.server
    server.poses.add(payload.timestamp, pose_to_matrix(payload.pose.model_dump()))
    return {"status": "ok", "buffered": len(server.poses)}


@router.post("/reset")
def post_reset(request: Request) -> dict:
    stamp = request.app.state.runtime.server.reset()
    return {"status": "ok", "reset_stamp": stamp}


@router.put("/config/noentry")
def put_noentry(request: Request, payload: NoEntryUpdate) -> dict:
    server = request.app.state.runtime.server
    return server.set_noentry(ground=payload.ground_as_noentry, free=payload.free_as_noentry)
