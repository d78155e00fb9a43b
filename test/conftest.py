import os
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


@pytest.fixture(scope="session", autouse=True)
def setup_database(tmp_path_factory):
    """Point DB_ROOT at a temp directory and initialise the registry."""
    root = tmp_path_factory.mktemp("db_root")
    os.environ["DB_ROOT"] = str(root)

    from plan_engine.config.database_config import reset_database_config
    from plan_engine.database import close_db_pool, init_db
    from plan_engine.services.foundation.settings import get_settings

    reset_database_config()
    get_settings.cache_clear()
    init_db()
    yield
    close_db_pool()


@pytest.fixture(autouse=True)
def fresh_engine():
    """Every test gets its own engine (lanes, cache and broadcast buffers)."""
    from plan_engine.services.plans.plan_service import reset_plan_engine

    reset_plan_engine()
    yield
    reset_plan_engine()


@pytest.fixture()
def engine():
    from plan_engine.services.plans.plan_service import get_plan_engine

    return get_plan_engine()


@pytest.fixture()
def plan_repo():
    from plan_engine.repository.plan_repository import PlanRepository

    return PlanRepository()


def generated_payload(phases: Optional[Dict[str, List[str]]] = None):
    from plan_engine.services.plans.plan_models import GeneratedPhase, GeneratedPlan, GeneratedTask

    phases = phases if phases is not None else {"Validation": ["T1", "T2", "T3"]}
    return GeneratedPlan(
        phases=[
            GeneratedPhase(label=label, tasks=[GeneratedTask(title=title) for title in titles])
            for label, titles in phases.items()
        ]
    )


@pytest.fixture()
def make_plan(engine) -> Callable:
    """Create a plan through the engine; returns the committed version-1 state."""
    from plan_engine.services.plans.mutations import CreatePlan

    def _make(phases: Optional[Dict[str, List[str]]] = None, title: str = "Launch plan", actor: str = "alice"):
        committed = engine.create_plan(CreatePlan(title=title, generated=generated_payload(phases)), actor)
        return committed.state

    return _make


@pytest.fixture()
def build_state() -> Callable:
    """In-memory version-1 state for pure function tests; nothing is stored."""
    from plan_engine.services.plans.mutations import CreatePlan, seed_plan

    def _build(phases: Optional[Dict[str, List[str]]] = None, plan_id: int = 1):
        mutation = CreatePlan(title="Draft plan", generated=generated_payload(phases))
        return seed_plan(plan_id, mutation, "alice", now="2026-01-05T09:00:00.000000Z").state

    return _build
