import numpy as np
import pytest
import requests

from contracts.array_codec import encode_array
from world.instance_store import BACKGROUND_ID, InstanceStore
from world.projector import UNLABELED, ProjectionError, ProjectionView, RayCastProjector
from world.render_client import RenderServiceProjector
from world.transform import backproject_pixels

INTR = {"fx": 10.0, "fy": 10.0, "cx": 1.55, "cy": 1.55, "width": 4, "height": 4}


def _slab(store: InstanceStore, iid: int, z: float, half: float = 0.4, pitch: float = 0.02):
    tree, _ = store.ensure(iid, class_id=14, pitch=pitch)
    lo = tree.coord_to_key((-half, -half, z - pitch))
    hi = tree.coord_to_key((half, half, z + pitch))
    for kx in range(lo[0], hi[0] + 1):
        for ky in range(lo[1], hi[1] + 1):
            for kz in range(lo[2], hi[2] + 1):
                tree.update_node((kx, ky, kz), True)
    tree.set_bbx((-half, -half, z - 2 * pitch), (half, half, z + 2 * pitch))
    return tree


def _view(points: np.ndarray) -> ProjectionView:
    return ProjectionView(sensor_to_world=np.eye(4), intrinsics=INTR, points_world=points)


def _surface(depth: float) -> np.ndarray:
    vs, us = np.meshgrid(np.arange(4), np.arange(4), indexing="ij")
    return backproject_pixels(us, vs, INTR, depth=depth)


def test_empty_store_renders_unlabeled():
    labels = RayCastProjector(stride=1).render(_view(_surface(1.0)), InstanceStore(resolution=0.05))
    assert labels.shape == (4, 4)
    assert labels.dtype == np.int32
    assert (labels == UNLABELED).all()


def test_observed_surface_is_attributed_to_its_instance():
    store = InstanceStore(resolution=0.05)
    store.ensure(BACKGROUND_ID)
    _slab(store, 0, 1.0)

    labels = RayCastProjector(stride=1, num_workers=2).render(_view(_surface(1.0)), store)
    assert (labels == 0).all()


def test_points_outside_the_bounding_box_are_skipped():
    store = InstanceStore(resolution=0.05)
    _slab(store, 0, 1.0)
    labels = RayCastProjector(stride=1).render(_view(_surface(3.0) + np.array([5.0, 0.0, 0.0])), store)
    assert (labels == UNLABELED).all()


def test_nearest_instance_wins_for_invalid_pixels():
    store = InstanceStore(resolution=0.05)
    _slab(store, 0, 1.0)
    _slab(store, 1, 2.0)
    points = np.full((4, 4, 3), np.nan)

    labels = RayCastProjector(stride=1, num_workers=4).render(_view(points), store)
    assert (labels == 0).all()


def test_subsampled_pixels_stamp_their_neighbours():
    store = InstanceStore(resolution=0.05)
    _slab(store, 0, 1.0)
    labels = RayCastProjector(stride=2).render(_view(_surface(1.0)), store)
    # Samples at (0,0),(0,2),(2,0),(2,2); the 3x3 stamps cover the 4x4 image.
    assert (labels == 0).all()


class _FakeResponse:
    def __init__(self, body, status=200):
        self._body = body
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class _FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append((url, json, timeout))
        if self.error is not None:
            raise self.error
        return self.response


def test_render_service_reply_is_decoded():
    labels = np.arange(16, dtype=np.int32).reshape(4, 4)
    session = _FakeSession(_FakeResponse({"label_ins": encode_array(labels)}))
    projector = RenderServiceProjector("http://render/label", timeout=0.5, session=session)

    store = InstanceStore(resolution=0.05)
    store.ensure(0, class_id=14, pitch=0.01)
    store.set_centroid(0, (0.0, 0.0, 1.0))

    out = projector.render(_view(_surface(1.0)), store)
    assert np.array_equal(out, labels)

    url, payload, timeout = session.calls[0]
    assert url == "http://render/label"
    assert timeout == 0.5
    assert len(payload["transform"]) == 4
    assert payload["camera_info"]["fx"] == 10.0
    assert payload["depth"]["shape"] == [4, 4]
    assert [g["instance_id"] for g in payload["grids"]] == [0]


@pytest.mark.parametrize(
    "session",
    [
        _FakeSession(error=requests.ConnectionError("down")),
        _FakeSession(_FakeResponse({}, status=503)),
        _FakeSession(_FakeResponse(ValueError("not json"))),
        _FakeSession(_FakeResponse({"label_ins": "nope"})),
        _FakeSession(_FakeResponse({"label_ins": encode_array(np.zeros((2, 2), dtype=np.int32))})),
    ],
)
def test_render_service_failures_raise_projection_error(session):
    projector = RenderServiceProjector("http://render/label", session=session)
    with pytest.raises(ProjectionError):
        projector.render(_view(_surface(1.0)), InstanceStore(resolution=0.05))
