import pytest

from plan_engine.errors import NotFoundError, ValidationError
from plan_engine.services.plans import order_sequencer
from plan_engine.services.plans.mutations import ReorderTask


def test_remove_closes_the_gap():
    ordered = order_sequencer.remove_task([11, 12, 13], 12)
    assert ordered == [11, 13]
    assert order_sequencer.renumber(ordered) == {11: 0, 13: 1}


def test_insert_after_anchor_and_append():
    assert order_sequencer.insert_task([1, 2, 3], 9, after_task_id=1) == [1, 9, 2, 3]
    assert order_sequencer.insert_task([1, 2, 3], 9) == [1, 2, 3, 9]
    assert order_sequencer.insert_task([], 9) == [9]


def test_insert_after_unknown_anchor_is_not_found():
    with pytest.raises(NotFoundError):
        order_sequencer.insert_task([1, 2], 9, after_task_id=5)


def test_reorder_moves_task_and_shifts_neighbours():
    assert order_sequencer.reorder_task([1, 2, 3, 4], 4, 0) == [4, 1, 2, 3]
    assert order_sequencer.reorder_task([1, 2, 3, 4], 1, 3) == [2, 3, 4, 1]
    assert order_sequencer.reorder_task([1, 2, 3], 2, 1) == [1, 2, 3]


def test_later_move_to_a_position_wins_it():
    # the earlier mover came from below: it is pushed one slot down
    first = order_sequencer.reorder_task([1, 2, 3, 4], 4, 0)
    assert order_sequencer.reorder_task(first, 3, 0) == [3, 4, 1, 2]
    # the earlier mover came from above: the last slot has nothing after it
    first = order_sequencer.reorder_task([1, 2, 3, 4], 1, 3)
    assert order_sequencer.reorder_task(first, 2, 3) == [3, 4, 1, 2]


def test_unconditioned_reorders_to_one_slot_apply_in_commit_order(engine, make_plan):
    plan = make_plan(phases={"Validation": ["T1", "T2", "T3", "T4"]})

    engine.mutate(plan.id, ReorderTask(task_id=4, new_order=0), None, "alice")
    state = engine.mutate(plan.id, ReorderTask(task_id=3, new_order=0), None, "bob").state
    assert [task.id for task in state.phase_tasks(1)] == [3, 4, 1, 2]
    assert state.get_task(4).order == 1

    engine.mutate(plan.id, ReorderTask(task_id=1, new_order=3), None, "alice")
    state = engine.mutate(plan.id, ReorderTask(task_id=2, new_order=3), None, "bob").state
    assert [task.id for task in state.phase_tasks(1)] == [3, 4, 1, 2]
    assert state.get_task(1).order == 2
    assert [task.order for task in state.phase_tasks(1)] == [0, 1, 2, 3]


@pytest.mark.parametrize("new_order", [-1, 3, 10])
def test_reorder_out_of_range_is_rejected(new_order):
    with pytest.raises(ValidationError):
        order_sequencer.reorder_task([1, 2, 3], 1, new_order)


def test_apply_sequence_requires_a_permutation():
    assert order_sequencer.apply_sequence([1, 2, 3], [3, 1, 2]) == [3, 1, 2]
    with pytest.raises(ValidationError):
        order_sequencer.apply_sequence([1, 2, 3], [1, 2])
    with pytest.raises(ValidationError):
        order_sequencer.apply_sequence([1, 2, 3], [1, 1, 2])
    with pytest.raises(ValidationError):
        order_sequencer.apply_sequence([1, 2, 3], [1, 2, 4])


def test_inputs_are_not_mutated():
    original = [1, 2, 3]
    order_sequencer.reorder_task(original, 3, 0)
    order_sequencer.remove_task(original, 2)
    order_sequencer.insert_task(original, 4)
    assert original == [1, 2, 3]


def test_is_dense():
    assert order_sequencer.is_dense([0, 1, 2])
    assert order_sequencer.is_dense([2, 0, 1])
    assert order_sequencer.is_dense([])
    assert not order_sequencer.is_dense([0, 2])
    assert not order_sequencer.is_dense([0, 0, 1])
    assert not order_sequencer.is_dense([0, None])
