import numpy as np

from perception.identity_tracker import IdentityTracker


def _blank(h=8, w=8, fill=-2):
    return np.full((h, w), fill, dtype=np.int32)


def test_first_frame_allocates_fresh_ids():
    tracker = IdentityTracker()
    target = _blank()
    target[:4, :4] = 7
    target[4:, 4:] = 9

    result = tracker.track(_blank(), target, {7: 14, 9: 1})

    assert result.id_map == {7: 0, 9: 1}
    assert sorted(result.new_ids) == [0, 1]
    assert result.class_table == {0: 14, 1: 1}
    assert set(np.unique(target).tolist()) == {-2, 0, 1}
    assert tracker.next_id == 2


def test_overlapping_region_reuses_persistent_id():
    tracker = IdentityTracker()
    tracker.track(_blank(), _blank(), {})

    reference = _blank()
    reference[:4, :4] = 5
    target = _blank()
    target[:4, :3] = 11

    result = tracker.track(reference, target, {11: 14}, known_classes={5: 14, 6: 2})

    # IoU 12/16 > 0.5
    assert result.id_map == {11: 5}
    assert result.new_ids == []
    assert (target[:4, :3] == 5).all()
    assert result.class_table == {5: 14, 6: 2}


def test_weak_overlap_gets_new_id():
    tracker = IdentityTracker(association_threshold=0.5)
    reference = _blank()
    reference[:4, :4] = 0
    target = _blank()
    target[:4, 3:8] = 3  # IoU 4/32

    result = tracker.track(reference, target, {3: 2})
    assert result.id_map == {3: 0}  # counter starts at 0, independent of the reference
    assert result.new_ids == [0]


def test_reserved_ids_pass_through():
    tracker = IdentityTracker()
    target = _blank()
    target[0, :] = -1
    target[1, :] = 4
    result = tracker.track(_blank(), target, {4: 3})
    assert (target[0, :] == -1).all()
    assert (target[2:, :] == -2).all()
    assert -1 not in result.id_map and -2 not in result.id_map


def test_frame_classes_take_precedence_over_known_ones():
    tracker = IdentityTracker()
    reference = _blank()
    reference[:, :] = 2
    target = _blank()
    target[:, :] = 8
    result = tracker.track(reference, target, {8: 6}, known_classes={2: 14})
    assert result.class_table == {2: 6}


def test_missing_class_is_left_out(caplog):
    tracker = IdentityTracker()
    target = _blank()
    target[:2, :2] = 1
    with caplog.at_level("WARNING"):
        result = tracker.track(_blank(), target, {})
    assert result.class_table == {}
    assert "no class entry" in caplog.text


def test_reset_restarts_the_counter():
    tracker = IdentityTracker()
    target = _blank()
    target[:2, :2] = 1
    tracker.track(_blank(), target, {1: 1})
    assert tracker.next_id == 1
    tracker.reset()
    assert tracker.next_id == 0
