from __future__ import annotations

import numpy as np


def quat_to_rot(q: list[float] | np.ndarray) -> np.ndarray:
    """
    q = [x,y,z,w]
    returns 3x3 rotation matrix
    """
    q = np.asarray(q, dtype=np.float64).reshape(4)
    x, y, z, w = q.tolist()
    n = x * x + y * y + z * z + w * w
    if n < 1e-12:
        return np.eye(3, dtype=np.float64)
    s = 2.0 / n
    xx, yy, zz = x * x * s, y * y * s, z * z * s
    xy, xz, yz = x * y * s, x * z * s, y * z * s
    wx, wy, wz = w * x * s, w * y * s, w * z * s
    return np.array(
        [
            [1.0 - (yy + zz), xy - wz, xz + wy],
            [xy + wz, 1.0 - (xx + zz), yz - wx],
            [xz - wy, yz + wx, 1.0 - (xx + yy)],
        ],
        dtype=np.float64,
    )


def pose_to_matrix(pose: dict) -> np.ndarray:
    """
    Contract: pose is sensor->world.
      pose["position"] = [tx,ty,tz]
      pose["quaternion"] = [x,y,z,w]
    """
    t = np.asarray(pose["position"], dtype=np.float64).reshape(3)
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = quat_to_rot(pose["quaternion"])
    T[:3, 3] = t
    return T


def sensor_origin(sensor_to_world: np.ndarray) -> np.ndarray:
    return np.asarray(sensor_to_world, dtype=np.float64).reshape(4, 4)[:3, 3].copy()


def invert_transform(T: np.ndarray) -> np.ndarray:
    """Rigid inverse of a 4x4 transform."""
    T = np.asarray(T, dtype=np.float64).reshape(4, 4)
    R = T[:3, :3]
    out = np.eye(4, dtype=np.float64)
    out[:3, :3] = R.T
    out[:3, 3] = -R.T @ T[:3, 3]
    return out


def transform_points(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Apply a 4x4 transform to (..., 3) points. NaN points stay NaN.
    """
    T = np.asarray(T, dtype=np.float64).reshape(4, 4)
    pts = np.asarray(points, dtype=np.float64)
    shape = pts.shape
    flat = pts.reshape(-1, 3)
    out = flat @ T[:3, :3].T + T[:3, 3]
    return out.reshape(shape)


def backproject_pixels(
    u: np.ndarray,
    v: np.ndarray,
    intr: dict,
    *,
    depth: float = 1.0,
) -> np.ndarray:
    """Pixel coordinates -> sensor-frame points at a fixed depth (optical frame, z forward)."""
    u = np.asarray(u, dtype=np.float64)
    v = np.asarray(v, dtype=np.float64)
    z = np.full(u.shape, float(depth), dtype=np.float64)
    x = z * (u - float(intr["cx"])) / float(intr["fx"])
    y = z * (v - float(intr["cy"])) / float(intr["fy"])
    return np.stack([x, y, z], axis=-1)
