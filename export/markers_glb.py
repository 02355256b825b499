from __future__ import annotations

from typing import Any

import numpy as np
import trimesh


def _cube_list_mesh(*, centers: np.ndarray, size: float, rgba: np.ndarray) -> trimesh.Trimesh:
    """
    One mesh made of axis-aligned cubes of edge `size` at `centers`.

    centers: (N,3) world-space cube centres.
    rgba: (4,) uint8 face colour.
    """
    centers = np.asarray(centers, dtype=np.float64).reshape(-1, 3)
    base = trimesh.creation.box(extents=(size, size, size))
    meshes: list[trimesh.Trimesh] = []
    for c in centers:
        transform = np.eye(4, dtype=np.float64)
        transform[:3, 3] = c
        meshes.append(base.copy().apply_transform(transform))

    if not meshes:
        return trimesh.Trimesh(
            vertices=np.zeros((0, 3), dtype=np.float32),
            faces=np.zeros((0, 3), dtype=np.int64),
            process=False,
        )

    mesh = trimesh.util.concatenate(meshes)
    mesh.visual.face_colors = np.tile(rgba, (len(mesh.faces), 1))
    return mesh


def markers_to_glb(markers: list[dict[str, Any]], *, max_cubes: int = 25000) -> bytes:
    """
    Render CUBE_LIST markers as a GLB scene, one node per non-empty marker.

    Markers beyond `max_cubes` total cubes are randomly subsampled.
    """
    scene = trimesh.Scene()
    active = [m for m in markers if m.get("action") == "ADD" and m.get("points")]
    total = sum(len(m["points"]) for m in active)
    keep = 1.0 if total <= int(max_cubes) else float(max_cubes) / float(total)

    for m in active:
        centers = np.asarray(m["points"], dtype=np.float64).reshape(-1, 3)
        if keep < 1.0:
            n = max(1, int(round(centers.shape[0] * keep)))
            sel = np.random.choice(centers.shape[0], size=n, replace=False)
            centers = centers[sel]
        rgba = (np.clip(np.asarray(m["color"], dtype=np.float64), 0.0, 1.0) * 255.0).astype(np.uint8)
        mesh = _cube_list_mesh(centers=centers, size=float(m["scale"][0]), rgba=rgba)
        scene.add_geometry(mesh, node_name=f"{m['ns']}_{m['id']}")

    return scene.export(file_type="glb")
