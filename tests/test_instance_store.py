import numpy as np
import pytest

from config.load_config import SensorModelCfg
from world.instance_store import BACKGROUND_ID, UNCERTAIN_ID, InstanceStore
from world.object_classes import class_id_from_name, class_id_to_voxel_pitch, class_name


def test_background_uses_map_resolution_and_objects_their_pitch():
    store = InstanceStore(resolution=0.05, sensor_model=SensorModelCfg(hit=0.8))
    bg, created = store.ensure(BACKGROUND_ID)
    assert created
    assert bg.resolution == pytest.approx(0.05)
    assert bg.prob_hit == pytest.approx(0.8)

    mug, created = store.ensure(3, class_id=14, pitch=0.01)
    assert created
    assert mug.resolution == pytest.approx(0.01)

    again, created = store.ensure(3, class_id=5, pitch=0.5)
    assert not created
    assert again is mug
    assert store.class_id(3) == 14


def test_uncertain_id_is_never_materialized():
    store = InstanceStore(resolution=0.05)
    with pytest.raises(ValueError):
        store.ensure(UNCERTAIN_ID)
    with pytest.raises(ValueError):
        store.ensure(-3, class_id=14, pitch=0.01)
    with pytest.raises(ValueError):
        store.ensure(4)
    assert store.is_empty()


def test_iteration_tables_and_clear():
    store = InstanceStore(resolution=0.05)
    store.ensure(2, class_id=1, pitch=0.01)
    store.ensure(BACKGROUND_ID)
    store.ensure(0, class_id=14, pitch=0.01)

    assert [iid for iid, _ in store] == [-1, 0, 2]
    assert store.object_ids() == [0, 2]
    assert 0 in store and 7 not in store
    assert store.class_table() == {0: 14, 2: 1}

    summary = store.class_summary()
    assert [c["instance_id"] for c in summary] == [0, 2]
    assert summary[0]["class_name"] == "025_mug"
    assert summary[0]["confidence"] == 1.0

    assert store.centroid(0) is None
    store.set_centroid(0, [1.0, 2.0, 3.0])
    assert np.allclose(store.centroid(0), [1, 2, 3])

    store.clear()
    assert len(store) == 0
    assert store.background is None


def test_class_table_lookups():
    assert class_name(14) == "025_mug"
    assert class_name(99) == "class_99"
    assert class_id_from_name("mug") == 14
    assert class_id_from_name("025_mug") == 14
    with pytest.raises(KeyError):
        class_id_from_name("teapot")


def test_voxel_pitch_lookup_with_overrides_and_default(caplog):
    assert class_id_to_voxel_pitch(14) == pytest.approx(0.01)
    assert class_id_to_voxel_pitch(14, overrides={14: 0.02}) == pytest.approx(0.02)
    with caplog.at_level("WARNING"):
        assert class_id_to_voxel_pitch(500, default=0.03) == pytest.approx(0.03)
    assert "no voxel pitch" in caplog.text
