from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Dict, Iterable, List, Optional

from fastapi import APIRouter


@dataclass
class RouterEntry:
    """One mounted router and what it serves."""

    namespace: str
    version: str
    path: str
    router: APIRouter
    tags: List[str] = field(default_factory=list)
    requires_plan: bool = False
    streaming: bool = False
    description: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.version}"


class RouterRegistry:
    """Routers keyed by ``namespace/version``, kept in mount order."""

    _entries: ClassVar[Dict[str, RouterEntry]] = {}

    @classmethod
    def register(cls, entry: RouterEntry) -> None:
        existing = cls._entries.get(entry.key)
        if existing is not None and existing.router is not entry.router:
            raise ValueError(f"Namespace {entry.key} already mounted at {existing.path}")
        cls._entries[entry.key] = entry

    @classmethod
    def entries(cls) -> List[RouterEntry]:
        return list(cls._entries.values())

    @classmethod
    def streaming_paths(cls) -> List[str]:
        return [entry.path for entry in cls._entries.values() if entry.streaming]


def register_router(
    *,
    namespace: str,
    version: str,
    path: str,
    router: APIRouter,
    tags: Optional[Iterable[str]] = None,
    requires_plan: bool = False,
    streaming: bool = False,
    description: Optional[str] = None,
) -> None:
    RouterRegistry.register(
        RouterEntry(
            namespace=namespace,
            version=version,
            path=path,
            router=router,
            tags=list(tags or []),
            requires_plan=requires_plan,
            streaming=streaming,
            description=description,
        )
    )


def routers_for_fastapi() -> List[APIRouter]:
    return [entry.router for entry in RouterRegistry.entries()]


def generate_router_markdown() -> str:
    """Route overview for the README / ops docs."""
    entries = RouterRegistry.entries()
    if not entries:
        return "_No routers mounted._"

    lines = [
        "| Router | Mounted at | Per plan | SSE | Notes |",
        "| --- | --- | --- | --- | --- |",
    ]
    for entry in entries:
        flags = ("yes" if entry.requires_plan else "", "yes" if entry.streaming else "")
        lines.append(
            f"| {entry.key} | `{entry.path}` | {flags[0]} | {flags[1]} | {entry.description or ''} |"
        )
    return "\n".join(lines)


__all__ = [
    "RouterRegistry",
    "RouterEntry",
    "register_router",
    "routers_for_fastapi",
    "generate_router_markdown",
]
