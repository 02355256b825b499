import numpy as np
import pytest

from world.octree import TREE_DEPTH, TREE_MAX_VAL, VoxelOctree


def test_hit_miss_and_clamping():
    tree = VoxelOctree(0.05)
    key = tree.coord_to_key((0.12, 0.33, 0.51))

    assert tree.search_key(key) is None
    tree.update_node(key, True)
    assert tree.search_key(key) == pytest.approx(0.7)

    other = tree.coord_to_key((1.01, 1.01, 1.01))
    tree.update_node(other, False)
    assert tree.search_key(other) == pytest.approx(0.4)
    assert not tree.is_key_occupied(other)

    for _ in range(20):
        tree.update_node(key, True)
    assert tree.search_key(key) == pytest.approx(0.97)
    for _ in range(40):
        tree.update_node(key, False)
    assert tree.search_key(key) == pytest.approx(0.12)


def test_key_layout_is_centered_on_origin():
    tree = VoxelOctree(0.1)
    assert tree.coord_to_key((0.05, 0.05, 0.05)) == (TREE_MAX_VAL, TREE_MAX_VAL, TREE_MAX_VAL)
    assert tree.coord_to_key((-0.05, 0.05, 0.05)) == (TREE_MAX_VAL - 1, TREE_MAX_VAL, TREE_MAX_VAL)
    assert np.allclose(tree.key_to_coord((TREE_MAX_VAL, TREE_MAX_VAL, TREE_MAX_VAL)), [0.05, 0.05, 0.05])
    # Out of the addressable range.
    assert tree.coord_to_key((1e6, 0.0, 0.0)) is None
    assert tree.coord_to_key((np.nan, 0.0, 0.0)) is None


def test_query_many_reports_unknown_as_nan():
    tree = VoxelOctree(0.05)
    tree.update_coord((0.01, 0.01, 0.01), True)
    out = tree.query_many(np.array([[0.01, 0.01, 0.01], [0.5, 0.5, 0.5], [np.nan, 0.0, 0.0]]))
    assert out[0] == pytest.approx(0.7)
    assert np.isnan(out[1])
    assert np.isnan(out[2])


def test_prune_merges_uniform_siblings_and_expands_on_update():
    tree = VoxelOctree(0.05)
    base = tree.coord_to_key((0.01, 0.01, 0.01))
    assert all(k % 2 == 0 for k in base)
    siblings = [(base[0] + dx, base[1] + dy, base[2] + dz) for dx in (0, 1) for dy in (0, 1) for dz in (0, 1)]
    for k in siblings:
        tree.update_node(k, True, lazy=True)
    assert tree.num_nodes() == 8

    assert tree.prune() == 1
    assert tree.num_nodes() == 1
    leaf = next(tree.iter_leafs())
    assert leaf.depth == TREE_DEPTH - 1
    assert leaf.size == pytest.approx(0.1)
    assert leaf.key == base
    for k in siblings:
        assert tree.search_key(k) == pytest.approx(0.7)

    tree.update_node(siblings[0], True)
    assert tree.num_nodes() == 8
    assert tree.search_key(siblings[0]) > 0.7
    for k in siblings[1:]:
        assert tree.search_key(k) == pytest.approx(0.7)


def test_eager_updates_merge_uniform_siblings_without_changing_queries():
    tree = VoxelOctree(0.05)
    base = tree.coord_to_key((0.01, 0.01, 0.01))
    siblings = [(base[0] + dx, base[1] + dy, base[2] + dz) for dx in (0, 1) for dy in (0, 1) for dz in (0, 1)]
    for k in siblings:
        tree.update_node(k, False)
    assert tree.num_nodes() == 1
    assert tree.prune() == 0
    for k in siblings:
        assert tree.search_key(k) == pytest.approx(0.4)


def test_prune_keeps_mixed_groups():
    tree = VoxelOctree(0.05)
    base = tree.coord_to_key((0.01, 0.01, 0.01))
    for dx in (0, 1):
        for dy in (0, 1):
            for dz in (0, 1):
                tree.update_node((base[0] + dx, base[1] + dy, base[2] + dz), dx == 0)
    assert tree.prune() == 0
    assert tree.num_nodes() == 8


def test_iter_leafs_folds_to_max_depth_with_max_child():
    tree = VoxelOctree(0.05)
    base = tree.coord_to_key((0.01, 0.01, 0.01))
    tree.update_node(base, False)
    tree.update_node((base[0] + 1, base[1], base[2]), True)
    leafs = list(tree.iter_leafs(TREE_DEPTH - 1))
    assert len(leafs) == 1
    assert leafs[0].probability == pytest.approx(0.7)


def test_compute_ray_keys_excludes_end_voxel():
    tree = VoxelOctree(0.05)
    keys = tree.compute_ray_keys((0.025, 0.025, 0.025), (0.525, 0.025, 0.025))
    assert len(keys) == 10
    assert keys[0] == (TREE_MAX_VAL, TREE_MAX_VAL, TREE_MAX_VAL)
    assert keys[-1] == (TREE_MAX_VAL + 9, TREE_MAX_VAL, TREE_MAX_VAL)
    assert tree.compute_ray_keys((0.01, 0.01, 0.01), (0.02, 0.02, 0.02)) == []


def test_cast_ray_hits_first_occupied_voxel():
    tree = VoxelOctree(0.05)
    tree.update_coord((0.525, 0.025, 0.025), True)
    tree.update_coord((0.825, 0.025, 0.025), True)

    hit, end = tree.cast_ray((0.025, 0.025, 0.025), (1.0, 0.0, 0.0))
    assert hit
    assert np.allclose(end, [0.525, 0.025, 0.025])

    hit, end = tree.cast_ray((0.025, 0.025, 0.025), (1.0, 0.0, 0.0), max_range=0.3)
    assert not hit

    hit, _ = tree.cast_ray((0.025, 0.025, 0.025), (-1.0, 0.0, 0.0))
    assert not hit


def test_cast_ray_stops_in_unknown_space_unless_ignored():
    tree = VoxelOctree(0.05)
    tree.update_coord((0.525, 0.025, 0.025), True)
    hit, end = tree.cast_ray((0.025, 0.025, 0.025), (1.0, 0.0, 0.0), ignore_unknown=False)
    assert not hit
    assert end is None


def test_cast_ray_on_occupied_origin():
    tree = VoxelOctree(0.05)
    tree.update_coord((0.025, 0.025, 0.025), True)
    hit, end = tree.cast_ray((0.03, 0.03, 0.03), (0.0, 0.0, 1.0))
    assert hit
    assert np.allclose(end, [0.025, 0.025, 0.025])


def test_bounding_box_and_extent():
    tree = VoxelOctree(0.05)
    assert not tree.has_bbx()
    assert tree.metric_bounds() is None
    tree.set_bbx((0, 0, 0), (1, 1, 1))
    assert tree.in_bbx((0.5, 0.5, 0.5))
    assert not tree.in_bbx((1.5, 0.5, 0.5))
    assert tree.in_bbx_many(np.array([[0.5, 0.5, 0.5], [2, 2, 2]])).tolist() == [True, False]

    tree.update_coord((0.01, 0.01, 0.01), True)
    lo, hi = tree.metric_bounds()
    assert np.allclose(lo, [0, 0, 0])
    assert np.allclose(hi, [0.05, 0.05, 0.05])
    assert np.allclose(tree.metric_max(), hi)
    assert np.allclose(tree.metric_min(), lo)

    tree.clear()
    assert len(tree) == 0
    assert not tree.has_bbx()


def test_empty_tree_prune_and_inner_update_are_noops():
    tree = VoxelOctree(0.05)
    tree.update_inner_occupancy()
    assert tree.prune() == 0
    assert len(tree) == 0
    assert list(tree.iter_leafs()) == []
