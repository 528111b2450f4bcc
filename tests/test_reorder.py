from types import SimpleNamespace

import pytest

from nowly.position import is_valid_position, min_position
from nowly.reorder import rebalance_order, resolve_reorder

P1, P2, P3 = '0|000008:', '0|00000g:', '0|00000o:'


def test_move_last_to_front_lands_before_first():
    snapshot = [(1, P1), (2, P2), (3, P3)]
    result = resolve_reorder(snapshot, 3, 0)
    assert not result.needs_rebalance
    assert result.new_position < P1


def test_move_first_to_end_lands_after_last():
    result = resolve_reorder([(1, P1), (2, P2), (3, P3)], 1, 2)
    assert result.new_position > P3


def test_move_down_one_goes_after_target():
    result = resolve_reorder([(1, P1), (2, P2), (3, P3)], 1, 1)
    assert P2 < result.new_position < P3


def test_move_up_one_goes_before_target():
    result = resolve_reorder([(1, P1), (2, P2), (3, P3)], 3, 1)
    assert P1 < result.new_position < P2


def test_snapshot_is_sorted_by_position_first():
    shuffled = [(3, P3), (1, P1), (2, P2)]
    result = resolve_reorder(shuffled, 3, 0)
    assert result.new_position < P1


def test_objects_with_id_and_position():
    tasks = [SimpleNamespace(id=i, position=p) for i, p in ((1, P1), (2, P2), (3, P3))]
    assert resolve_reorder(tasks, 2, 0).new_position < P1


def test_same_index_keeps_current_key():
    result = resolve_reorder([(1, P1), (2, P2), (3, P3)], 2, 1)
    assert result.new_position == P2
    assert not result.needs_rebalance


def test_index_is_clamped():
    assert resolve_reorder([(1, P1), (2, P2), (3, P3)], 1, 99).new_position > P3
    assert resolve_reorder([(1, P1), (2, P2), (3, P3)], 3, -5).new_position < P1


def test_unknown_task_raises():
    with pytest.raises(ValueError):
        resolve_reorder([(1, P1)], 42, 0)


def test_exhausted_space_asks_for_rebalance():
    snapshot = [(1, min_position()), (2, P2), (3, P3)]
    result = resolve_reorder(snapshot, 3, 0)
    assert result.needs_rebalance
    assert result.new_position is None
    assert result.rebalance == [3, 1, 2]


def test_rebalance_order_keeps_given_order():
    pairs = rebalance_order([3, 1, 2])
    assert [tid for tid, _ in pairs] == [3, 1, 2]
    keys = [k for _, k in pairs]
    assert keys == sorted(keys)
    assert all(is_valid_position(k) for k in keys)
    assert rebalance_order([]) == []
