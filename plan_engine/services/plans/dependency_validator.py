"""Prerequisite-edge rules and blocking queries.

Pure functions over a :class:`PlanState` snapshot; they hold no state of their
own and may run concurrently with reads of the same plan.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Set

from ...errors import (
    CrossPlanError,
    DuplicateDependencyError,
    ErrorCode,
    NotFoundError,
    SelfReferenceError,
    WouldCycleError,
)
from .plan_models import PlanState, Task, TaskStatus

BLOCKED_TARGET_STATUSES = {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED}


class EdgeCheck(str, Enum):
    OK = "ok"
    SELF_REFERENCE = "self_reference"
    WOULD_CYCLE = "would_cycle"
    CROSS_PLAN = "cross_plan"
    MISSING_TASK = "missing_task"
    DUPLICATE = "duplicate"


def _adjacency(state: PlanState) -> Dict[int, List[int]]:
    adjacency: Dict[int, List[int]] = {}
    for edge in state.dependencies:
        adjacency.setdefault(edge.prerequisite_task_id, []).append(edge.dependent_task_id)
    return adjacency


def find_path(state: PlanState, start: int, target: int) -> Optional[List[int]]:
    """Edge path ``start ->* target`` along prerequisite->dependent edges, if any."""
    adjacency = _adjacency(state)
    parents: Dict[int, Optional[int]] = {start: None}
    stack: List[int] = [start]
    while stack:
        current = stack.pop()
        if current == target:
            path: List[int] = []
            node: Optional[int] = current
            while node is not None:
                path.append(node)
                node = parents[node]
            return list(reversed(path))
        for nxt in adjacency.get(current, []):
            if nxt not in parents:
                parents[nxt] = current
                stack.append(nxt)
    return None


def can_add_edge(
    state: PlanState,
    prerequisite_id: int,
    dependent_id: int,
    prerequisite_plan_id: Optional[int] = None,
) -> EdgeCheck:
    """Classify the candidate edge ``prerequisite_id -> dependent_id``."""
    if prerequisite_plan_id is not None and prerequisite_plan_id != state.id:
        return EdgeCheck.CROSS_PLAN
    if prerequisite_id == dependent_id:
        return EdgeCheck.SELF_REFERENCE
    if state.get_task(prerequisite_id) is None or state.get_task(dependent_id) is None:
        return EdgeCheck.MISSING_TASK
    if state.find_edge(prerequisite_id, dependent_id) is not None:
        return EdgeCheck.DUPLICATE
    # a path dependent ->* prerequisite means the new edge would close a loop
    if find_path(state, dependent_id, prerequisite_id) is not None:
        return EdgeCheck.WOULD_CYCLE
    return EdgeCheck.OK


def ensure_can_add_edge(
    state: PlanState,
    prerequisite_id: int,
    dependent_id: int,
    prerequisite_plan_id: Optional[int] = None,
) -> None:
    """Raise the error matching :func:`can_add_edge`'s verdict."""
    verdict = can_add_edge(state, prerequisite_id, dependent_id, prerequisite_plan_id)
    if verdict == EdgeCheck.OK:
        return
    if verdict == EdgeCheck.CROSS_PLAN:
        raise CrossPlanError(prerequisite_plan_id, state.id, prerequisite_id, dependent_id)
    if verdict == EdgeCheck.SELF_REFERENCE:
        raise SelfReferenceError(dependent_id)
    if verdict == EdgeCheck.MISSING_TASK:
        missing = prerequisite_id if state.get_task(prerequisite_id) is None else dependent_id
        raise NotFoundError(
            f"Task {missing} not found in plan {state.id}",
            error_code=ErrorCode.TASK_NOT_FOUND,
            plan_id=state.id,
            task_id=missing,
        )
    if verdict == EdgeCheck.DUPLICATE:
        edge = state.find_edge(prerequisite_id, dependent_id)
        raise DuplicateDependencyError(prerequisite_id, dependent_id, edge.id)
    raise WouldCycleError(prerequisite_id, dependent_id, find_path(state, dependent_id, prerequisite_id))


def _is_satisfied(task: Optional[Task], skipped_satisfies: bool) -> bool:
    if task is None:
        return True
    if task.status == TaskStatus.COMPLETED:
        return True
    return skipped_satisfies and task.status == TaskStatus.SKIPPED


def blocking_prerequisites(state: PlanState, task_id: int, skipped_satisfies: bool = True) -> List[Task]:
    """Prerequisites of ``task_id`` that are not yet satisfied."""
    blocking: List[Task] = []
    for prerequisite_id in state.prerequisites_of(task_id):
        prerequisite = state.get_task(prerequisite_id)
        if not _is_satisfied(prerequisite, skipped_satisfies):
            blocking.append(prerequisite)
    blocking.sort(key=lambda task: task.id)
    return blocking


def is_unblocked(state: PlanState, task_id: int, skipped_satisfies: bool = True) -> bool:
    return not blocking_prerequisites(state, task_id, skipped_satisfies)


def ready_tasks(state: PlanState, skipped_satisfies: bool = True) -> List[Task]:
    """Not-started tasks whose prerequisites are all satisfied, in plan order."""
    phase_rank = {phase.id: phase.position for phase in state.phases}
    ready = [
        task
        for task in state.live_tasks()
        if task.status == TaskStatus.NOT_STARTED and is_unblocked(state, task.id, skipped_satisfies)
    ]
    ready.sort(key=lambda task: (phase_rank.get(task.phase_id, 0), task.order or 0, task.id))
    return ready


def has_cycle(state: PlanState) -> bool:
    """Kahn's algorithm over the whole edge set."""
    adjacency = _adjacency(state)
    indegree: Dict[int, int] = {}
    nodes: Set[int] = set()
    for edge in state.dependencies:
        nodes.update((edge.prerequisite_task_id, edge.dependent_task_id))
        indegree[edge.dependent_task_id] = indegree.get(edge.dependent_task_id, 0) + 1
    queue = [node for node in nodes if indegree.get(node, 0) == 0]
    visited = 0
    while queue:
        node = queue.pop()
        visited += 1
        for nxt in adjacency.get(node, []):
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)
    return visited != len(nodes)
