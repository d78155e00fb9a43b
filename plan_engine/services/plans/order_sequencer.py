"""Dense ordering of the live tasks inside one phase.

Every function takes the phase's task ids in their current order and returns
the new order as a fresh list; :func:`renumber` turns that list into the
``0..N-1`` order values written back to the tasks. Nothing here mutates its
input, so a failed validation never leaves a half-renumbered phase behind.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from ...errors import ErrorCode, NotFoundError, ValidationError


def renumber(ordered_ids: Sequence[int]) -> Dict[int, int]:
    """Map each task id to its dense position."""
    return {task_id: index for index, task_id in enumerate(ordered_ids)}


def insert_at(ordered_ids: Sequence[int], task_id: int, index: int) -> List[int]:
    if task_id in ordered_ids:
        raise ValidationError(
            f"Task {task_id} is already part of this phase",
            field_name="task_id",
            field_value=task_id,
        )
    if index < 0 or index > len(ordered_ids):
        raise ValidationError(
            f"Position {index} is outside 0..{len(ordered_ids)}",
            error_code=ErrorCode.FIELD_VALUE_OUT_OF_RANGE,
            field_name="order",
            field_value=index,
        )
    result = list(ordered_ids)
    result.insert(index, task_id)
    return result


def insert_task(ordered_ids: Sequence[int], task_id: int, after_task_id: Optional[int] = None) -> List[int]:
    """Insert ``task_id`` right after ``after_task_id``, or at the end."""
    if after_task_id is None:
        return insert_at(ordered_ids, task_id, len(ordered_ids))
    try:
        anchor_index = list(ordered_ids).index(after_task_id)
    except ValueError:
        raise NotFoundError(
            f"Anchor task {after_task_id} is not in this phase",
            error_code=ErrorCode.TASK_NOT_FOUND,
            task_id=after_task_id,
        ) from None
    return insert_at(ordered_ids, task_id, anchor_index + 1)


def remove_task(ordered_ids: Sequence[int], task_id: int) -> List[int]:
    if task_id not in ordered_ids:
        raise NotFoundError(
            f"Task {task_id} is not in this phase",
            error_code=ErrorCode.TASK_NOT_FOUND,
            task_id=task_id,
        )
    return [existing for existing in ordered_ids if existing != task_id]


def reorder_task(ordered_ids: Sequence[int], task_id: int, new_order: int) -> List[int]:
    """Move a task to ``new_order``.

    Conceptually a remove followed by an insert at the target index, computed
    in one pass. The most recent move to a position always wins it; the task
    that held it shifts one slot towards the slot the mover left, so it lands
    after the winner when the mover came from further down and before it
    when the mover came from further up.
    """
    if new_order < 0 or new_order >= len(ordered_ids):
        raise ValidationError(
            f"new_order {new_order} is outside 0..{len(ordered_ids) - 1}",
            error_code=ErrorCode.FIELD_VALUE_OUT_OF_RANGE,
            field_name="new_order",
            field_value=new_order,
        )
    remaining = remove_task(ordered_ids, task_id)
    remaining.insert(new_order, task_id)
    return remaining


def apply_sequence(ordered_ids: Sequence[int], desired_ids: Sequence[int]) -> List[int]:
    """Replace the order wholesale; ``desired_ids`` must be a permutation."""
    if len(desired_ids) != len(set(desired_ids)):
        raise ValidationError("Task sequence contains duplicates", field_name="task_ids")
    if set(desired_ids) != set(ordered_ids):
        missing = sorted(set(ordered_ids) - set(desired_ids))
        unknown = sorted(set(desired_ids) - set(ordered_ids))
        raise ValidationError(
            "Task sequence must list every task of the phase exactly once",
            field_name="task_ids",
            context={"missing": missing, "unknown": unknown},
        )
    return list(desired_ids)


def is_dense(orders: Sequence[Optional[int]]) -> bool:
    """True when ``orders`` is exactly ``{0..N-1}``."""
    return sorted(order for order in orders if order is not None) == list(range(len(orders))) and None not in orders
