"""HTTP routers of the plan engine.

Importing this package mounts every route module into :class:`RouterRegistry`.
"""

import importlib
from typing import List, Tuple

from fastapi import APIRouter

from .registry import RouterRegistry, register_router, routers_for_fastapi

_ROUTE_MODULES: Tuple[str, ...] = (
    "plan_routes",
    "task_routes",
    "progress_routes",
    "sync_routes",
    "export_routes",
)

for _module in _ROUTE_MODULES:
    importlib.import_module(f"{__name__}.{_module}")


def get_all_routers() -> List[APIRouter]:
    return routers_for_fastapi()


__all__ = [
    "RouterRegistry",
    "register_router",
    "routers_for_fastapi",
    "get_all_routers",
]
