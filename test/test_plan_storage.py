import sqlite3

import pytest

from plan_engine.repository.plan_storage import get_plan_db_path


def test_plan_database_tables(make_plan):
    plan = make_plan()
    with sqlite3.connect(get_plan_db_path(plan.id)) as conn:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert {"plan_meta", "phases", "tasks", "task_dependencies", "progress_snapshots", "task_history"}.issubset(tables)


def test_live_task_positions_are_unique_per_phase(make_plan):
    plan = make_plan()
    with sqlite3.connect(get_plan_db_path(plan.id)) as conn:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("UPDATE tasks SET position=0 WHERE id=2")


def test_self_loop_edge_is_refused_by_schema(make_plan):
    plan = make_plan()
    with sqlite3.connect(get_plan_db_path(plan.id)) as conn:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO task_dependencies (id, prerequisite_task_id, dependent_task_id) VALUES (1, 2, 2)"
            )


def test_history_versions_are_unique(make_plan):
    plan = make_plan()
    with sqlite3.connect(get_plan_db_path(plan.id)) as conn:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO task_history (version, actor_id, operation, payload, timestamp) "
                "VALUES (1, 'mallory', 'add_task', '{}', 'now')"
            )


def test_registry_mirrors_version(engine, make_plan, plan_repo):
    from plan_engine.services.plans.mutations import AddTask

    plan = make_plan(title="Mirrored plan")
    engine.mutate(plan.id, AddTask(phase_id=1, title="Extra"), None, "alice")
    summary = {item.id: item for item in plan_repo.list_plans()}[plan.id]
    assert summary.version == 2
    assert summary.title == "Mirrored plan"
