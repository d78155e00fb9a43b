"""Repository package for database access.

Exports:
- `PlanRepository`, the registry + per-plan SQLite store.
"""

from .plan_repository import PlanRepository

__all__ = [
    "PlanRepository",
]
