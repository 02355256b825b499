from __future__ import annotations

import base64
from typing import Any

import numpy as np


def encode_array(arr: np.ndarray) -> dict[str, Any]:
    a = np.ascontiguousarray(arr)
    return {
        "dtype": str(a.dtype),
        "shape": [int(s) for s in a.shape],
        "data": base64.b64encode(a.tobytes()).decode("ascii"),
    }


def decode_array(payload: dict[str, Any]) -> np.ndarray:
    dtype = np.dtype(str(payload["dtype"]))
    shape = tuple(int(s) for s in payload["shape"])
    raw = base64.b64decode(payload["data"])
    if len(raw) != int(np.prod(shape, dtype=np.int64)) * dtype.itemsize:
        raise ValueError(f"array payload size {len(raw)} does not match shape {shape} / {dtype}")
    return np.frombuffer(raw, dtype=dtype).reshape(shape).copy()


def array_from_bytes(raw: bytes, dtype, shape: tuple[int, ...]) -> np.ndarray:
    dtype = np.dtype(dtype)
    expected = int(np.prod(shape, dtype=np.int64)) * dtype.itemsize
    if len(raw) != expected:
        raise ValueError(f"expected {expected} bytes for {shape} {dtype}, got {len(raw)}")
    return np.frombuffer(raw, dtype=dtype).reshape(shape).copy()
