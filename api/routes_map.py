from __future__ import annotations

import base64
from typing import Any

import numpy as np
from fastapi import APIRouter, HTTPException, Request, Response

from contracts.array_codec import encode_array
from export.map_publisher import TOPICS
from export.markers_glb import markers_to_glb

router = APIRouter(tags=["map"])


def _jsonable(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return encode_array(value)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _check_topic(topic: str) -> None:
    if topic not in TOPICS:
        raise HTTPException(status_code=404, detail={"status": "UNKNOWN_TOPIC", "topic": topic, "topics": list(TOPICS)})


@router.get("/grids")
def get_grids(request: Request) -> dict:
    state = request.app.state.runtime
    last = state.server.last_sensor_grids()
    if last is None:
        return {"frame_id": state.config.publish.sensor_frame_id, "stamp": None, "grids": []}
    stamp, grids, _ = last
    return {"frame_id": state.config.publish.sensor_frame_id, "stamp": stamp, "grids": [g.to_dict() for g in grids]}


@router.get("/grids/noentry")
def get_grids_noentry(request: Request) -> dict:
    state = request.app.state.runtime
    last = state.server.last_sensor_grids()
    if last is None:
        return {"frame_id": state.config.publish.sensor_frame_id, "stamp": None, "grids": []}
    stamp, _, noentry = last
    return {"frame_id": state.config.publish.sensor_frame_id, "stamp": stamp, "grids": [g.to_dict() for g in noentry]}


@router.get("/grids/world")
def get_grids_world(request: Request) -> dict:
    state = request.app.state.runtime
    return {"frame_id": state.config.publish.frame_id, "grids": [g.to_dict() for g in state.server.world_grids()]}


@router.get("/classes")
def get_classes(request: Request) -> dict:
    return {"classes": request.app.state.runtime.server.class_summary()}


@router.post("/topics/{topic}/attach")
def attach_topic(request: Request, topic: str) -> dict:
    _check_topic(topic)
    request.app.state.runtime.attach(topic)
    return {"status": "ok", "topic": topic}


@router.delete("/topics/{topic}")
def detach_topic(request: Request, topic: str) -> dict:
    _check_topic(topic)
    if not request.app.state.runtime.detach(topic):
        raise HTTPException(status_code=404, detail={"status": "NOT_ATTACHED", "topic": topic})
    return {"status": "ok", "topic": topic}


@router.get("/topics/{topic}")
def read_topic(request: Request, topic: str) -> dict:
    _check_topic(topic)
    sink = request.app.state.runtime.sinks.get(topic)
    if sink is None:
        raise HTTPException(status_code=404, detail={"status": "NOT_ATTACHED", "topic": topic})
    message, count = sink.latest()
    return {"topic": topic, "count": count, "message": _jsonable(message)}


@router.get("/markers/{kind}.glb")
def get_markers_glb(request: Request, kind: str) -> Response:
    try:
        markers = request.app.state.runtime.server.markers(kind)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail={"status": "UNKNOWN_MARKERS", "msg": str(exc)}) from exc
    return Response(content=markers_to_glb(markers), media_type="model/gltf-binary")
