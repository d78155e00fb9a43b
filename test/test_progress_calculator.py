from datetime import datetime, timedelta, timezone

from plan_engine.services.plans.mutations import (
    AddTask,
    CreatePlan,
    DeleteTask,
    SetPlanStatus,
    UpdateTask,
    apply_mutation,
)
from plan_engine.services.plans.plan_models import (
    GeneratedPhase,
    GeneratedPlan,
    GeneratedTask,
    PlanStatus,
    ProgressMetrics,
    TaskStatus,
)
from plan_engine.services.plans.progress_calculator import (
    PHASE_COMPLETED,
    PLAN_COMPLETED,
    live_metrics,
    needs_daily_snapshot,
    owner_rollup,
    recompute,
    round_percent,
)


def _status(state, task_id, status, now=None):
    return apply_mutation(
        state, UpdateTask(task_id=task_id, status=status, override_dependencies=True), "alice", now=now
    )


def test_round_percent_half_up():
    assert round_percent(2, 3) == 67
    assert round_percent(1, 3) == 33
    assert round_percent(1, 8) == 13
    assert round_percent(0, 0) == 0


def test_skipped_tasks_leave_the_denominator(build_state):
    state = build_state({"Build": ["A", "B", "C", "D"]})
    state = _status(state, 1, TaskStatus.COMPLETED).state
    state = _status(state, 2, TaskStatus.COMPLETED).state
    state = _status(state, 3, TaskStatus.SKIPPED).state

    snapshot = recompute(state)
    assert snapshot.total_tasks == 4
    assert snapshot.completed_tasks == 2
    assert snapshot.skipped_tasks == 1
    assert snapshot.overall_completion_percent == 67
    assert snapshot.per_phase_completion[0].completion_percent == 67


def test_empty_and_all_skipped_plans(build_state):
    assert recompute(build_state({})).overall_completion_percent == 0

    state = build_state({"Build": ["A", "B"]})
    state = _status(state, 1, TaskStatus.SKIPPED).state
    state = _status(state, 2, TaskStatus.SKIPPED).state
    snapshot = recompute(state)
    assert snapshot.overall_completion_percent == 100
    assert not snapshot.per_phase_completion[0].is_complete


def test_deleted_tasks_are_not_counted(build_state):
    state = build_state({"Build": ["A", "B"]})
    state = _status(state, 1, TaskStatus.COMPLETED).state
    state = apply_mutation(state, DeleteTask(task_id=2), "alice").state
    snapshot = recompute(state)
    assert snapshot.total_tasks == 1
    assert snapshot.overall_completion_percent == 100


def test_completion_never_decreases_percent(build_state):
    state = build_state({"One": ["A", "B", "C"], "Two": ["D", "E"]})
    state = _status(state, 4, TaskStatus.SKIPPED).state
    previous = recompute(state).overall_completion_percent
    for task_id in (1, 2, 3, 5):
        state = _status(state, task_id, TaskStatus.COMPLETED).state
        current = recompute(state).overall_completion_percent
        assert current >= previous
        previous = current
    assert previous == 100


def test_phase_and_plan_completion_events(build_state):
    state = build_state({"One": ["A"], "Two": ["B"]})

    applied = _status(state, 1, TaskStatus.COMPLETED)
    assert [event.type for event in applied.events] == [PHASE_COMPLETED]
    assert applied.state.get_phase(1).completed_at is not None
    assert applied.state.plan.completed_at is None

    applied = _status(applied.state, 2, TaskStatus.COMPLETED)
    assert [event.type for event in applied.events] == [PHASE_COMPLETED, PLAN_COMPLETED]
    assert applied.state.plan.completed_at is not None

    # reopening a task clears the marks and a new task keeps them cleared
    applied = apply_mutation(applied.state, AddTask(phase_id=2, title="C"), "alice")
    assert applied.events == []
    assert applied.state.get_phase(2).completed_at is None
    assert applied.state.plan.completed_at is None


def test_live_metrics(build_state):
    state = build_state({"One": ["A", "B"], "Two": ["C", "D"]})
    state = _status(state, 1, TaskStatus.COMPLETED, now="2026-01-05T12:00:00.000000Z").state
    state = _status(state, 2, TaskStatus.COMPLETED, now="2026-01-12T12:00:00.000000Z").state

    metrics = live_metrics(state, now="2026-01-19T12:00:00.000000Z", window_days=30)
    assert metrics.completed_tasks == 2
    assert metrics.not_started_tasks == 2
    assert metrics.completion_percent == 50
    assert metrics.current_phase == "Two"
    # two completions over two weeks
    assert metrics.velocity == 1.0
    assert metrics.estimated_completion == "2026-02-02T12:00:00.000000Z"
    # created at 09:00 on 5 Jan: 3h and 171h
    assert metrics.average_task_hours == 87


def test_live_metrics_without_completions(build_state):
    metrics = live_metrics(build_state(), now="2026-01-19T12:00:00.000000Z")
    assert metrics.velocity == 0.0
    assert metrics.estimated_completion is None
    assert metrics.current_phase == "Validation"


def _metrics(plan_id, total, completed, velocity):
    return ProgressMetrics(
        plan_id=plan_id,
        version=1,
        total_tasks=total,
        completed_tasks=completed,
        in_progress_tasks=0,
        not_started_tasks=total - completed,
        skipped_tasks=0,
        completion_percent=round_percent(completed, total),
        velocity=velocity,
    )


def test_owner_rollup_averages_moving_plans_only():
    summary = owner_rollup(
        "carol",
        [_metrics(1, 4, 1, 1.0), _metrics(2, 3, 2, 2.25), _metrics(3, 1, 0, 0.0)],
    )
    assert summary.active_plans == 3
    assert summary.total_tasks == 8
    assert summary.completed_tasks == 3
    # 37.5% rounds up
    assert summary.overall_completion_percent == 38
    # (1.0 + 2.25) / 2, one decimal
    assert summary.average_velocity == 1.6


def test_owner_rollup_without_plans():
    summary = owner_rollup("nobody", [])
    assert summary.model_dump() == {
        "owner_id": "nobody",
        "active_plans": 0,
        "total_tasks": 0,
        "completed_tasks": 0,
        "overall_completion_percent": 0,
        "average_velocity": 0.0,
    }


def test_needs_daily_snapshot_resets_at_utc_midnight():
    now = datetime(2026, 1, 6, 8, 0, tzinfo=timezone.utc)
    assert needs_daily_snapshot(None, now) is True
    assert needs_daily_snapshot("2026-01-05T23:59:59.999999Z", now) is True
    assert needs_daily_snapshot("2026-01-06T00:00:00.000000Z", now) is False
    assert needs_daily_snapshot("2026-01-06T07:59:00.000000Z", now) is False


def _owned_plan(engine, owner_id, titles):
    generated = GeneratedPlan(phases=[GeneratedPhase(label="Build", tasks=[GeneratedTask(title=t) for t in titles])])
    return engine.create_plan(CreatePlan(title="Owned", owner_id=owner_id, generated=generated), owner_id).state


def test_owner_summary_counts_active_plans_of_that_owner(engine):
    first = _owned_plan(engine, "owner-rollup", ["A", "B"])
    _owned_plan(engine, "owner-rollup", ["C", "D"])
    archived = _owned_plan(engine, "owner-rollup", ["E"])
    _owned_plan(engine, "someone-else", ["F", "G", "H"])

    engine.mutate(first.id, UpdateTask(task_id=1, status=TaskStatus.COMPLETED), None, "owner-rollup")
    engine.mutate(archived.id, SetPlanStatus(status=PlanStatus.ARCHIVED), None, "owner-rollup")

    summary = engine.owner_summary("owner-rollup")
    assert summary.active_plans == 2
    assert summary.total_tasks == 4
    assert summary.completed_tasks == 1
    assert summary.overall_completion_percent == 25
    # one completion moments ago
    assert summary.average_velocity == 1.0

    assert engine.owner_summary("owner-without-plans").active_plans == 0


def test_daily_snapshot_is_taken_once_per_day(engine, make_plan):
    plan = make_plan()
    tomorrow = datetime.now(timezone.utc) + timedelta(days=1)

    # plan creation already stored today's snapshot
    assert engine.should_create_snapshot(plan.id) is False
    assert engine.capture_daily_snapshot(plan.id) is None

    assert engine.should_create_snapshot(plan.id, now=tomorrow) is True
    snapshot = engine.capture_daily_snapshot(plan.id, now=tomorrow)
    assert snapshot is not None and snapshot.id is not None
    assert snapshot.version == 1
    assert engine.should_create_snapshot(plan.id, now=tomorrow) is False
    assert [entry.version for entry in engine.progress_history(plan.id)] == [1, 1]
