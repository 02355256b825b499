import numpy as np
import pytest
from prometheus_client import REGISTRY

from export import map_publisher
from export.map_publisher import MapPublisher, is_speckle, label_colormap
from export.markers_glb import markers_to_glb
from world.instance_store import BACKGROUND_ID, InstanceStore
from world.octree_codec import OctreeCodecError, load


def _store() -> InstanceStore:
    store = InstanceStore(resolution=0.05)
    bg, _ = store.ensure(BACKGROUND_ID)
    # Two touching voxels plus one isolated voxel.
    bg.update_coord((0.025, 0.025, 0.025), True)
    bg.update_coord((0.075, 0.025, 0.025), True)
    bg.update_coord((1.025, 1.025, 1.025), True)
    bg.update_coord((0.525, 0.025, 0.025), False)
    return store


def _points_at_finest(markers):
    return [m for m in markers if m["id"] == 16][0]["points"]


def test_speckle_detection():
    bg = _store().background
    assert not is_speckle(bg, bg.coord_to_key((0.025, 0.025, 0.025)))
    assert is_speckle(bg, bg.coord_to_key((1.025, 1.025, 1.025)))


def test_speckle_filter_hides_isolated_background_voxels():
    store = _store()
    bg_markers, fg_markers = MapPublisher(store, filter_speckles=False).occupied_markers(1.0)
    assert len(_points_at_finest(bg_markers)) == 3
    assert fg_markers == []

    bg_markers, _ = MapPublisher(store, filter_speckles=True).occupied_markers(1.0)
    finest = _points_at_finest(bg_markers)
    assert len(finest) == 2
    assert [1.025, 1.025, 1.025] not in [[round(c, 3) for c in p] for p in finest]


def test_background_occupied_by_object_is_hidden():
    store = _store()
    mug, _ = store.ensure(0, class_id=14, pitch=0.01)
    mug.update_coord((0.025, 0.025, 0.025), True)

    bg_markers, fg_markers = MapPublisher(store).occupied_markers(2.0)
    assert len(_points_at_finest(bg_markers)) == 2
    fg = [m for m in fg_markers if m["points"]]
    assert len(fg) == 1
    assert fg[0]["ns"] == "0"
    assert fg[0]["action"] == "ADD"
    assert fg[0]["scale"] == [pytest.approx(0.01)] * 3
    assert fg[0]["header"] == {"frame_id": "map", "stamp": 2.0}
    assert {m["action"] for m in fg_markers if not m["points"]} == {"DELETE"}


def test_free_markers_only_cover_free_background():
    markers = MapPublisher(_store()).free_markers(1.0)
    assert _points_at_finest(markers) == [[pytest.approx(0.525), pytest.approx(0.025), pytest.approx(0.025)]]


def test_outputs_without_consumers_are_not_computed():
    store = _store()
    publisher = MapPublisher(store, frame_id="world")
    assert publisher.publish_all(1.0) == []

    received = []
    publisher.attach("markers_bg", received.append)
    publisher.attach("octomap_binary", received.append)
    assert publisher.publish_all(3.0) == ["markers_bg", "octomap_binary"]
    markers, octomap = received
    assert isinstance(markers, list)
    assert octomap["frame_id"] == "world"
    assert octomap["stamp"] == 3.0
    restored = load(octomap["data"])
    assert restored.is_node_occupied(restored.search((1.025, 1.025, 1.025)))

    publisher.detach("markers_bg")
    assert not publisher.has_consumers("markers_bg")
    assert publisher.publish_all(4.0) == ["octomap_binary"]


def test_empty_store_publishes_nothing():
    publisher = MapPublisher(InstanceStore(resolution=0.05))
    publisher.attach("markers_fg", lambda m: None)
    assert publisher.publish_all(1.0) == []


def test_unknown_topic_is_rejected():
    publisher = MapPublisher(InstanceStore(resolution=0.05))
    with pytest.raises(KeyError):
        publisher.attach("tf", lambda m: None)


def test_serialization_failure_is_logged_and_counted(monkeypatch, caplog):
    def _broken(tree):
        raise OctreeCodecError("disk full")

    monkeypatch.setattr(map_publisher, "dump_full", _broken)
    publisher = MapPublisher(_store())
    publisher.attach("octomap_full", lambda m: None)

    before = REGISTRY.get_sample_value("occmap_map_export_failures_total", {"topic": "octomap_full"}) or 0.0
    with caplog.at_level("ERROR"):
        assert publisher.publish_all(1.0) == []
    after = REGISTRY.get_sample_value("occmap_map_export_failures_total", {"topic": "octomap_full"})
    assert after == before + 1
    assert "Error serializing octree" in caplog.text


def test_colormap_and_glb_export():
    cmap = label_colormap()
    assert cmap.shape == (256, 3)
    assert np.allclose(cmap[0], 0.0)
    assert np.allclose(cmap[1], [128 / 255.0, 0.0, 0.0])

    bg_markers, _ = MapPublisher(_store()).occupied_markers(1.0)
    glb = markers_to_glb(bg_markers)
    assert glb[:4] == b"glTF"
    assert markers_to_glb([])[:4] == b"glTF"
