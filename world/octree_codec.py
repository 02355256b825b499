"""
Map serialization in octomap's stream formats.

`dump_full` writes the ``.ot`` stream (log-odds per node), `dump_binary` the
compact ``.bt`` stream (maximum-likelihood occupied/free bits). pyoctomap
reads and writes these through files, so each call goes through a private
temporary directory.
"""
from __future__ import annotations

import tempfile
from pathlib import Path

import pyoctomap

from world.octree import VoxelOctree

FULL_HEADER = b"# Octomap OcTree file"
BINARY_HEADER = b"# Octomap OcTree binary file"


class OctreeCodecError(RuntimeError):
    pass


def _write(octree: pyoctomap.OcTree, *, binary: bool) -> bytes:
    try:
        with tempfile.TemporaryDirectory(prefix="occmap-") as tmp:
            path = Path(tmp) / ("map.bt" if binary else "map.ot")
            if binary:
                octree.writeBinary(str(path))
            else:
                octree.write(str(path))
            data = path.read_bytes() if path.is_file() else b""
    except (OSError, RuntimeError, TypeError) as exc:
        raise OctreeCodecError(f"failed to serialize octree: {exc}") from exc
    if not data:
        raise OctreeCodecError("failed to serialize octree: octomap wrote nothing")
    return data


def _read(data: bytes, *, binary: bool) -> pyoctomap.OcTree:
    try:
        with tempfile.TemporaryDirectory(prefix="occmap-") as tmp:
            path = Path(tmp) / ("map.bt" if binary else "map.ot")
            path.write_bytes(data)
            if binary:
                # Occupied and free nodes come back at the reader's clamping
                # thresholds, so read into a tree that carries our sensor model.
                octree = VoxelOctree(0.1).octree
                ok = bool(octree.readBinary(str(path)))
            else:
                octree = pyoctomap.OcTree(0.1).read(str(path))
                ok = octree is not None
    except (OSError, RuntimeError, TypeError, ValueError) as exc:
        raise OctreeCodecError(f"failed to load octree: {exc}") from exc
    if not ok:
        raise OctreeCodecError("failed to load octree: malformed stream")
    return octree


def dump_full(tree: VoxelOctree) -> bytes:
    """Full log-odds per node."""
    return _write(tree.octree, binary=False)


def dump_binary(tree: VoxelOctree) -> bytes:
    """Occupied/free state only."""
    # octomap converts to maximum likelihood and prunes before writing the
    # binary stream, in place. That must not hit the live map.
    copy = _read(dump_full(tree), binary=False)
    return _write(copy, binary=True)


def load(data: bytes) -> VoxelOctree:
    if data.startswith(BINARY_HEADER):
        return VoxelOctree.wrap(_read(data, binary=True))
    if data.startswith(FULL_HEADER):
        return VoxelOctree.wrap(_read(data, binary=False))
    raise OctreeCodecError("unknown octree format")
