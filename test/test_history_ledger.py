import pytest

from plan_engine.errors import NothingToUndoError, ValidationError
from plan_engine.services.plans.history_ledger import inverse_mutation
from plan_engine.services.plans.mutations import (
    AddDependency,
    AddTask,
    DeleteTask,
    RemoveDependency,
    ReorderPhase,
    ReorderTask,
    RestoreTask,
    SetPlanStatus,
    UpdateTask,
)
from plan_engine.services.plans.plan_models import HistoryEntry, PlanStatus, TaskStatus


def _comparable(state):
    payload = state.model_dump(mode="json")
    payload["dependencies"] = sorted(payload["dependencies"], key=lambda edge: edge["id"])
    return payload


def _run_workload(engine, plan_id):
    mutations = [
        AddTask(phase_id=1, title="T4", after_task_id=1),
        AddDependency(prerequisite_task_id=1, dependent_task_id=3),
        AddDependency(prerequisite_task_id=4, dependent_task_id=2),
        UpdateTask(task_id=1, status=TaskStatus.COMPLETED),
        ReorderTask(task_id=3, new_order=0),
        DeleteTask(task_id=4),
        UpdateTask(task_id=2, title="Renamed", description="now described"),
        ReorderPhase(phase_id=1, task_ids=[1, 2, 3]),
    ]
    for mutation in mutations:
        engine.mutate(plan_id, mutation, None, "alice")


def test_entries_are_sequential_and_complete(engine, make_plan):
    plan = make_plan()
    _run_workload(engine, plan.id)

    entries = engine.history(plan.id)
    assert [entry.version for entry in entries] == list(range(1, 10))
    assert entries[0].operation == "create_plan"
    assert all(entry.actor_id == "alice" for entry in entries)
    assert [entry.version for entry in engine.history(plan.id, since_version=7)] == [8, 9]


def test_replay_reconstructs_live_state(engine, make_plan):
    plan = make_plan()
    _run_workload(engine, plan.id)

    live = engine.get_plan(plan.id)
    replayed = engine.ledger.replay(plan.id)
    assert _comparable(replayed) == _comparable(live)


def test_replay_to_intermediate_version_and_from_base(engine, make_plan):
    plan = make_plan()
    _run_workload(engine, plan.id)

    at_four = engine.ledger.replay(plan.id, to_version=4)
    assert at_four.version == 4
    assert {(edge.prerequisite_task_id, edge.dependent_task_id) for edge in at_four.dependencies} == {(1, 3), (4, 2)}

    resumed = engine.ledger.replay(plan.id, from_version=4, base_state=at_four)
    assert _comparable(resumed) == _comparable(engine.get_plan(plan.id))

    with pytest.raises(ValidationError):
        engine.ledger.replay(plan.id, from_version=4)


def test_undo_reverts_the_actors_latest_change(engine, make_plan):
    plan = make_plan()
    engine.mutate(plan.id, UpdateTask(task_id=2, title="Mine"), None, "alice")
    engine.mutate(plan.id, AddTask(phase_id=1, title="Theirs"), None, "bob")

    committed = engine.undo(plan.id, "alice")
    state = committed.state
    assert committed.version == 4
    assert committed.entry.undoes_version == 2
    assert state.tasks[2].title == "T2"
    assert state.get_task(4).title == "Theirs"


def test_undo_skips_undone_entries_and_stops_at_creation(engine, make_plan):
    plan = make_plan(actor="alice")
    engine.mutate(plan.id, AddTask(phase_id=1, title="First"), None, "alice")
    engine.mutate(plan.id, AddTask(phase_id=1, title="Second"), None, "alice")

    engine.undo(plan.id, "alice")
    engine.undo(plan.id, "alice")
    state = engine.get_plan(plan.id)
    assert [task.title for task in state.phase_tasks(1)] == ["T1", "T2", "T3"]

    with pytest.raises(NothingToUndoError):
        engine.undo(plan.id, "alice")


def test_undo_passes_over_changes_others_made_irreversible(engine, make_plan):
    plan = make_plan(actor="alice")
    engine.mutate(plan.id, AddTask(phase_id=1, title="T4"), None, "alice")
    engine.mutate(plan.id, UpdateTask(task_id=2, title="Renamed"), None, "alice")
    engine.mutate(plan.id, DeleteTask(task_id=2), None, "bob")

    committed = engine.undo(plan.id, "alice")
    assert committed.version == 5
    assert committed.entry.undoes_version == 2
    assert committed.state.get_task(4) is None
    assert committed.state.get_task(2) is None

    with pytest.raises(NothingToUndoError) as excinfo:
        engine.undo(plan.id, "alice")
    assert excinfo.value.context["skipped_versions"] == [3]
    assert engine.get_plan(plan.id).version == 5


def test_undo_of_update_restores_cleared_fields(engine, make_plan):
    plan = make_plan()
    engine.mutate(plan.id, UpdateTask(task_id=2, description="x", estimated_time="2h"), None, "alice")
    engine.mutate(plan.id, UpdateTask(task_id=2, title="Renamed"), None, "alice")
    engine.mutate(plan.id, UpdateTask(task_id=2, description="bob's notes"), None, "bob")

    # the title-only edit leaves bob's description alone
    state = engine.undo(plan.id, "alice").state
    assert state.get_task(2).title == "T2"
    assert state.get_task(2).description == "bob's notes"

    engine.mutate(plan.id, UpdateTask(task_id=2, description=None), None, "bob")
    state = engine.undo(plan.id, "alice").state
    assert state.get_task(2).description is None
    assert state.get_task(2).estimated_time is None

    assert _comparable(engine.ledger.replay(plan.id)) == _comparable(engine.get_plan(plan.id))


def test_undo_of_delete_restores_edges(engine, make_plan):
    plan = make_plan()
    engine.mutate(plan.id, AddDependency(prerequisite_task_id=1, dependent_task_id=2), None, "alice")
    engine.mutate(plan.id, DeleteTask(task_id=1), None, "alice")

    state = engine.undo(plan.id, "alice").state
    assert state.get_task(1).order == 0
    assert [(edge.id, edge.prerequisite_task_id, edge.dependent_task_id) for edge in state.dependencies] == [(1, 1, 2)]


def test_undo_of_completion_bypasses_dependency_gate(engine, make_plan):
    plan = make_plan()
    engine.mutate(plan.id, UpdateTask(task_id=1, status=TaskStatus.IN_PROGRESS), None, "alice")
    engine.mutate(plan.id, AddDependency(prerequisite_task_id=2, dependent_task_id=1), None, "bob")
    engine.mutate(plan.id, UpdateTask(task_id=1, status=TaskStatus.COMPLETED, override_dependencies=True), None, "carol")

    # carol's undo goes back to in_progress although task 2 is still open
    state = engine.undo(plan.id, "carol").state
    assert state.tasks[1].status == TaskStatus.IN_PROGRESS


def _entry(operation, **fields):
    return HistoryEntry(plan_id=1, version=5, actor_id="alice", operation=operation, timestamp="t", **fields)


def test_inverse_mutations():
    assert inverse_mutation(_entry("add_task", target_id=4)) == DeleteTask(task_id=4)
    assert inverse_mutation(_entry("restore_task", target_id=4)) == DeleteTask(task_id=4)
    assert inverse_mutation(_entry("add_dependency", target_id=3)) == RemoveDependency(edge_id=3)

    restore = inverse_mutation(
        _entry(
            "delete_task",
            target_id=2,
            before_state={
                "task": {"order": 1},
                "edges": [{"id": 1, "prerequisite_task_id": 1, "dependent_task_id": 2}],
            },
        )
    )
    assert isinstance(restore, RestoreTask)
    assert restore.order == 1
    assert restore.edges[0].id == 1

    assert inverse_mutation(
        _entry("reorder_task", target_id=3, before_state={"task_id": 3, "phase_id": 1, "order": 2})
    ) == ReorderTask(task_id=3, new_order=2, phase_id=1)
    assert inverse_mutation(
        _entry("reorder_phase", target_id=1, before_state={"phase_id": 1, "task_ids": [2, 1]})
    ) == ReorderPhase(phase_id=1, task_ids=[2, 1])
    assert inverse_mutation(
        _entry("remove_dependency", target_id=3, before_state={"id": 3, "prerequisite_task_id": 1, "dependent_task_id": 2})
    ) == AddDependency(prerequisite_task_id=1, dependent_task_id=2)
    assert inverse_mutation(
        _entry("set_plan_status", target_id=1, before_state={"status": "active"})
    ) == SetPlanStatus(status=PlanStatus.ACTIVE)

    update = inverse_mutation(
        _entry(
            "update_task",
            target_id=2,
            payload={"kind": "update_task", "task_id": 2, "description": "new", "status": "completed"},
            before_state={"description": None, "status": "not_started"},
        )
    )
    assert update == UpdateTask(task_id=2, description=None, status=TaskStatus.NOT_STARTED, override_dependencies=True)
    assert "description" in update.model_fields_set

    with pytest.raises(ValidationError):
        inverse_mutation(_entry("create_plan", target_id=1))
