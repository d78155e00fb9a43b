import pytest

from plan_engine.errors import (
    CrossPlanError,
    DuplicateDependencyError,
    NotFoundError,
    SelfReferenceError,
    WouldCycleError,
)
from plan_engine.services.plans import dependency_validator
from plan_engine.services.plans.dependency_validator import EdgeCheck
from plan_engine.services.plans.mutations import AddDependency, UpdateTask, apply_mutation
from plan_engine.services.plans.plan_models import TaskStatus


def _with_edges(state, *edges):
    for prerequisite, dependent in edges:
        state = apply_mutation(
            state, AddDependency(prerequisite_task_id=prerequisite, dependent_task_id=dependent), "alice"
        ).state
    return state


def _set_status(state, task_id, status):
    return apply_mutation(
        state, UpdateTask(task_id=task_id, status=status, override_dependencies=True), "alice"
    ).state


def test_can_add_edge_verdicts(build_state):
    state = _with_edges(build_state({"Build": ["A", "B", "C", "D"]}), (1, 2), (2, 3))

    assert dependency_validator.can_add_edge(state, 3, 4) == EdgeCheck.OK
    assert dependency_validator.can_add_edge(state, 1, 1) == EdgeCheck.SELF_REFERENCE
    assert dependency_validator.can_add_edge(state, 3, 1) == EdgeCheck.WOULD_CYCLE
    assert dependency_validator.can_add_edge(state, 1, 2) == EdgeCheck.DUPLICATE
    assert dependency_validator.can_add_edge(state, 1, 99) == EdgeCheck.MISSING_TASK
    assert dependency_validator.can_add_edge(state, 1, 4, prerequisite_plan_id=2) == EdgeCheck.CROSS_PLAN


def test_ensure_can_add_edge_raises_matching_errors(build_state):
    state = _with_edges(build_state({"Build": ["A", "B", "C"]}), (1, 2), (2, 3))

    with pytest.raises(SelfReferenceError):
        dependency_validator.ensure_can_add_edge(state, 2, 2)
    with pytest.raises(WouldCycleError) as excinfo:
        dependency_validator.ensure_can_add_edge(state, 3, 1)
    assert excinfo.value.context["existing_path"] == [1, 2, 3]
    with pytest.raises(DuplicateDependencyError):
        dependency_validator.ensure_can_add_edge(state, 1, 2)
    with pytest.raises(NotFoundError):
        dependency_validator.ensure_can_add_edge(state, 1, 42)
    with pytest.raises(CrossPlanError):
        dependency_validator.ensure_can_add_edge(state, 1, 3, prerequisite_plan_id=7)


def test_find_path_follows_edge_direction(build_state):
    state = _with_edges(build_state({"Build": ["A", "B", "C"]}), (1, 2), (2, 3))
    assert dependency_validator.find_path(state, 1, 3) == [1, 2, 3]
    assert dependency_validator.find_path(state, 3, 1) is None


def test_accepted_edges_never_form_a_cycle(build_state):
    state = build_state({"Build": ["A", "B", "C", "D", "E"]})
    candidates = [(a, b) for a in range(1, 6) for b in range(1, 6)]
    for prerequisite, dependent in candidates:
        if dependency_validator.can_add_edge(state, prerequisite, dependent) == EdgeCheck.OK:
            state = _with_edges(state, (prerequisite, dependent))
        assert not dependency_validator.has_cycle(state)
    assert state.dependencies


def test_blocking_and_ready(build_state):
    state = _with_edges(build_state({"Build": ["A", "B", "C"]}), (1, 3), (2, 3))

    assert [task.id for task in dependency_validator.blocking_prerequisites(state, 3)] == [1, 2]
    assert [task.id for task in dependency_validator.ready_tasks(state)] == [1, 2]

    state = _set_status(state, 1, TaskStatus.COMPLETED)
    state = _set_status(state, 2, TaskStatus.SKIPPED)
    assert dependency_validator.is_unblocked(state, 3)
    assert [task.id for task in dependency_validator.ready_tasks(state)] == [3]
    # skipped prerequisites block when configured to
    assert [task.id for task in dependency_validator.blocking_prerequisites(state, 3, skipped_satisfies=False)] == [2]
