from __future__ import annotations

import csv
import io

import pytest
from fastapi.testclient import TestClient

from plan_engine.errors import ErrorCode
from plan_engine.main import app


@pytest.fixture()
def test_client() -> TestClient:
    return TestClient(app)


def _create(client: TestClient, phases=None, **extra):
    phases = phases or {"Validation": ["T1", "T2", "T3"]}
    body = {
        "title": "Customer discovery",
        "generated": {
            "phases": [
                {"label": label, "tasks": [{"title": title} for title in titles]}
                for label, titles in phases.items()
            ]
        },
        **extra,
    }
    response = client.post("/plans", json=body, headers={"X-Actor-Id": "alice"})
    assert response.status_code == 201, response.text
    return response.json()


def test_create_and_fetch_plan(test_client: TestClient):
    created = _create(test_client, analysis_id="route-analysis-1")
    plan_id = created["plan_id"]
    assert created["version"] == 1
    assert created["operation"] == "create_plan"

    response = test_client.get(f"/plans/{plan_id}")
    assert response.status_code == 200
    assert response.headers["etag"] == '"1"'
    payload = response.json()
    assert payload["plan"]["title"] == "Customer discovery"
    assert len(payload["tasks"]) == 3

    listed = test_client.get("/plans", params={"analysis_id": "route-analysis-1"}).json()
    assert [item["id"] for item in listed] == [plan_id]

    duplicate = test_client.post(
        "/plans", json={"title": "Again", "analysis_id": "route-analysis-1"}, headers={"X-Actor-Id": "alice"}
    )
    assert duplicate.status_code == 409


def test_unknown_plan_returns_404(test_client: TestClient):
    response = test_client.get("/plans/999999")
    assert response.status_code == 404
    assert response.json()["error"]["error_code"] == ErrorCode.PLAN_NOT_FOUND


def test_task_lifecycle(test_client: TestClient):
    plan_id = _create(test_client)["plan_id"]

    added = test_client.post(
        f"/plans/{plan_id}/tasks",
        json={"phase_id": 1, "title": "Custom", "after_task_id": 1},
        headers={"X-Actor-Id": "bob"},
    )
    assert added.status_code == 201
    assert added.headers["etag"] == '"2"'
    task_id = added.json()["target_id"]
    assert added.json()["plan"]["tasks"][str(task_id)]["order"] == 1

    updated = test_client.patch(
        f"/plans/{plan_id}/tasks/{task_id}",
        json={"status": "completed"},
        headers={"If-Match": '"2"', "X-Actor-Id": "bob"},
    )
    assert updated.status_code == 200
    assert updated.json()["progress"]["completed_tasks"] == 1

    fetched = test_client.get(f"/plans/{plan_id}/tasks/{task_id}").json()
    assert fetched["completed_by"] == "bob"

    deleted = test_client.delete(f"/plans/{plan_id}/tasks/{task_id}", headers={"If-Match": "3"})
    assert deleted.status_code == 200
    assert str(task_id) not in deleted.json()["plan"]["tasks"]
    assert test_client.get(f"/plans/{plan_id}/tasks/{task_id}").status_code == 404

    with_deleted = test_client.get(f"/plans/{plan_id}", params={"include_deleted": True}).json()
    assert with_deleted["tasks"][str(task_id)]["deleted_at"] is not None


def test_stale_if_match_returns_conflict_with_current_state(test_client: TestClient):
    plan_id = _create(test_client)["plan_id"]
    test_client.post(f"/plans/{plan_id}/tasks/reorder", json={"task_id": 3, "new_order": 0}, headers={"If-Match": "1"})

    stale = test_client.post(
        f"/plans/{plan_id}/tasks/reorder", json={"task_id": 1, "new_order": 2}, headers={"If-Match": "1"}
    )
    assert stale.status_code == 409
    error = stale.json()["error"]
    assert error["error_code"] == ErrorCode.VERSION_CONFLICT
    assert error["context"]["current_version"] == 2
    assert error["context"]["current_state"]["plan"]["version"] == 2


def test_dependency_routes(test_client: TestClient):
    plan_id = _create(test_client)["plan_id"]

    created = test_client.post(f"/plans/{plan_id}/tasks/3/dependencies", json={"prerequisite_task_id": 1})
    assert created.status_code == 201
    edge_id = created.json()["target_id"]

    cycle = test_client.post(f"/plans/{plan_id}/tasks/1/dependencies", json={"prerequisite_task_id": 3})
    assert cycle.status_code == 409
    assert cycle.json()["error"]["error_code"] == ErrorCode.WOULD_CYCLE

    self_loop = test_client.post(f"/plans/{plan_id}/tasks/2/dependencies", json={"prerequisite_task_id": 2})
    assert self_loop.status_code == 422

    cross = test_client.post(
        f"/plans/{plan_id}/tasks/2/dependencies",
        json={"prerequisite_task_id": 1, "prerequisite_plan_id": plan_id + 1000},
    )
    assert cross.status_code == 422

    blockers = test_client.get(f"/plans/{plan_id}/tasks/3/blockers").json()
    assert blockers["blocked"] is True
    assert [task["id"] for task in blockers["blockers"]] == [1]

    ready = test_client.get(f"/plans/{plan_id}/tasks/ready").json()
    assert [task["id"] for task in ready] == [1, 2]

    blocked_update = test_client.patch(f"/plans/{plan_id}/tasks/3", json={"status": "in_progress"})
    assert blocked_update.status_code == 409
    assert blocked_update.json()["error"]["context"]["blocking_task_ids"] == [1]

    removed = test_client.delete(f"/plans/{plan_id}/dependencies/{edge_id}")
    assert removed.status_code == 200
    assert test_client.delete(f"/plans/{plan_id}/dependencies/{edge_id}").status_code == 404


def test_phase_reorder_and_validation_errors(test_client: TestClient):
    plan_id = _create(test_client)["plan_id"]

    reordered = test_client.post(f"/plans/{plan_id}/phases/1/reorder", json={"task_ids": [3, 2, 1]})
    assert reordered.status_code == 200
    tasks = reordered.json()["plan"]["tasks"]
    assert [tasks[key]["order"] for key in ("1", "2", "3")] == [2, 1, 0]

    not_a_permutation = test_client.post(f"/plans/{plan_id}/phases/1/reorder", json={"task_ids": [1, 2]})
    assert not_a_permutation.status_code == 400

    bad_body = test_client.post(f"/plans/{plan_id}/tasks", json={"title": "No phase"})
    assert bad_body.status_code == 422

    bad_header = test_client.patch(f"/plans/{plan_id}/tasks/1", json={"title": "x"}, headers={"If-Match": "abc"})
    assert bad_header.status_code == 400


def test_undo_and_history(test_client: TestClient):
    plan_id = _create(test_client)["plan_id"]
    test_client.patch(f"/plans/{plan_id}/tasks/2", json={"title": "Renamed"}, headers={"X-Actor-Id": "bob"})

    nothing = test_client.post(f"/plans/{plan_id}/undo", headers={"X-Actor-Id": "carol"})
    assert nothing.status_code == 409

    undone = test_client.post(f"/plans/{plan_id}/undo", headers={"X-Actor-Id": "bob"})
    assert undone.status_code == 200
    assert undone.json()["undoes_version"] == 2
    assert undone.json()["plan"]["tasks"]["2"]["title"] == "T2"

    history = test_client.get(f"/plans/{plan_id}/history", params={"since_version": 1}).json()
    assert [entry["version"] for entry in history["entries"]] == [2, 3]
    assert history["entries"][1]["undoes_version"] == 2


def test_archived_plan_rejects_edits(test_client: TestClient):
    plan_id = _create(test_client)["plan_id"]
    archived = test_client.post(f"/plans/{plan_id}/status", json={"status": "archived"})
    assert archived.status_code == 200

    rejected = test_client.post(f"/plans/{plan_id}/tasks", json={"phase_id": 1, "title": "Late"})
    assert rejected.status_code == 409
    assert rejected.json()["error"]["error_code"] == ErrorCode.PLAN_ARCHIVED

    assert test_client.get("/plans", params={"status": "archived"}).status_code == 200


def test_progress_routes(test_client: TestClient):
    plan_id = _create(test_client, phases={"Validation": ["A", "B", "C", "D"]})["plan_id"]
    test_client.patch(f"/plans/{plan_id}/tasks/1", json={"status": "completed"})
    test_client.patch(f"/plans/{plan_id}/tasks/2", json={"status": "completed"})
    test_client.patch(f"/plans/{plan_id}/tasks/3", json={"status": "skipped"})

    progress = test_client.get(f"/plans/{plan_id}/progress").json()
    assert progress["snapshot"]["overall_completion_percent"] == 67
    assert progress["metrics"]["current_phase"] == "Validation"

    history = test_client.get(f"/plans/{plan_id}/progress/history").json()
    assert [snapshot["version"] for snapshot in history] == [1, 2, 3, 4]
    limited = test_client.get(f"/plans/{plan_id}/progress/history", params={"limit": 2}).json()
    assert [snapshot["version"] for snapshot in limited] == [3, 4]


def test_daily_snapshot_and_owner_routes(test_client: TestClient):
    plan_id = _create(test_client, owner_id="owner-routes")["plan_id"]
    test_client.patch(f"/plans/{plan_id}/tasks/1", json={"status": "completed"})

    # creation and the edit already stored snapshots today
    again = test_client.post(f"/plans/{plan_id}/progress/snapshots")
    assert again.status_code == 200
    assert again.json() == {"created": False, "snapshot": None}

    listed = test_client.get("/plans", params={"owner_id": "owner-routes"}).json()
    assert [plan["id"] for plan in listed] == [plan_id]

    summary = test_client.get("/owners/owner-routes/progress").json()
    assert summary["active_plans"] == 1
    assert summary["total_tasks"] == 3
    assert summary["completed_tasks"] == 1
    assert summary["overall_completion_percent"] == 33

    assert test_client.post("/plans/999997/progress/snapshots").status_code == 404


def test_export_route(test_client: TestClient):
    plan_id = _create(test_client)["plan_id"]
    test_client.patch(f"/plans/{plan_id}/tasks/1", json={"status": "completed"})

    response = test_client.post(f"/plans/{plan_id}/export", json={"format": "csv", "include_completed": False})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert f"plan_{plan_id}_v2.csv" in response.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(response.text)))
    assert [row[2] for row in rows[1:]] == ["T2", "T3"]

    old = test_client.post(f"/plans/{plan_id}/export", json={"format": "json", "version": 1})
    assert old.json()["plan_version"] == 1

    assert test_client.post(f"/plans/{plan_id}/export", json={"format": "pdf"}).status_code == 422


def test_event_stream_requires_existing_plan(test_client: TestClient):
    assert test_client.get("/plans/999998/events").status_code == 404


def test_health(test_client: TestClient):
    assert test_client.get("/health").json()["status"] == "healthy"
