"""Ordered fan-out of committed plan versions to subscribers."""

from __future__ import annotations

import asyncio
import itertools
import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Union

from .plan_models import utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 256

_subscriber_ids = itertools.count(1)


@dataclass
class SyncEvent:
    plan_id: int
    version: int
    delta: Dict[str, Any]
    timestamp: str = field(default_factory=utc_now_iso)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "version": self.version,
            "delta": self.delta,
            "timestamp": self.timestamp,
        }


@dataclass
class Subscription:
    """Receiving end of one subscriber.

    SSE handlers pass their event loop and read ``queue`` with ``await``;
    threaded consumers leave ``loop`` unset and call :meth:`get`.
    """

    plan_id: int
    subscriber_id: int
    queue: Union[asyncio.Queue, "queue.Queue[SyncEvent]"]
    loop: Optional[asyncio.AbstractEventLoop] = None

    def get(self, timeout: Optional[float] = None) -> SyncEvent:
        if self.loop is not None:
            raise RuntimeError("asyncio subscriptions must be awaited via subscription.queue.get()")
        return self.queue.get(timeout=timeout)

    def drain(self) -> List[SyncEvent]:
        """Everything already delivered, without waiting."""
        events: List[SyncEvent] = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except (queue.Empty, asyncio.QueueEmpty):
                return events


class SyncBroadcaster:
    """Per-plan publish/subscribe with a bounded replay buffer.

    ``publish`` is called from inside the plan's mutation lane, so events
    reach every subscriber in version order. Delivery happens while holding
    the broadcaster lock to keep replay and live events from interleaving.
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self._buffer_size = buffer_size
        self._buffers: Dict[int, Deque[SyncEvent]] = {}
        self._subscribers: Dict[int, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(
        self,
        plan_id: int,
        since_version: Optional[int] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Subscription:
        """Register a subscriber; buffered events newer than ``since_version`` are sent first."""
        channel: Union[asyncio.Queue, queue.Queue] = asyncio.Queue() if loop is not None else queue.Queue()
        subscription = Subscription(
            plan_id=plan_id,
            subscriber_id=next(_subscriber_ids),
            queue=channel,
            loop=loop,
        )
        with self._lock:
            self._subscribers.setdefault(plan_id, []).append(subscription)
            if since_version is not None:
                for event in self._buffers.get(plan_id, ()):
                    if event.version > since_version:
                        self._deliver(subscription, event)
        logger.debug("Subscriber %s joined plan %s", subscription.subscriber_id, plan_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.plan_id, [])
            self._subscribers[subscription.plan_id] = [
                existing for existing in subscribers if existing.subscriber_id != subscription.subscriber_id
            ]
            if not self._subscribers[subscription.plan_id]:
                del self._subscribers[subscription.plan_id]

    def publish(self, plan_id: int, version: int, delta: Dict[str, Any]) -> Optional[SyncEvent]:
        event = SyncEvent(plan_id=plan_id, version=version, delta=delta)
        with self._lock:
            buffer = self._buffers.setdefault(plan_id, deque(maxlen=self._buffer_size))
            if buffer and version <= buffer[-1].version:
                logger.warning(
                    "Dropping out-of-order publish for plan %s: version %s after %s",
                    plan_id,
                    version,
                    buffer[-1].version,
                )
                return None
            buffer.append(event)
            for subscription in self._subscribers.get(plan_id, []):
                self._deliver(subscription, event)
        return event

    def latest_version(self, plan_id: int) -> Optional[int]:
        with self._lock:
            buffer = self._buffers.get(plan_id)
            return buffer[-1].version if buffer else None

    def oldest_version(self, plan_id: int) -> Optional[int]:
        with self._lock:
            buffer = self._buffers.get(plan_id)
            return buffer[0].version if buffer else None

    def subscriber_count(self, plan_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(plan_id, []))

    def buffered_plans(self) -> List[int]:
        with self._lock:
            return sorted(self._buffers)

    def drop(self, plan_id: int) -> bool:
        """Forget the replay buffer of ``plan_id``; live subscribers stay attached.

        Subscribers reconnecting from an older version afterwards get a resync.
        """
        with self._lock:
            dropped = self._buffers.pop(plan_id, None) is not None
        if dropped:
            logger.debug("Dropped replay buffer of plan %s", plan_id)
        return dropped

    def _deliver(self, subscription: Subscription, event: SyncEvent) -> None:
        if subscription.loop is None:
            subscription.queue.put_nowait(event)
            return
        try:
            subscription.loop.call_soon_threadsafe(subscription.queue.put_nowait, event)
        except RuntimeError:
            # loop closed; the SSE handler is gone
            logger.info(
                "Subscriber %s of plan %s dropped event %s",
                subscription.subscriber_id,
                subscription.plan_id,
                event.version,
            )


class CursorAction(str, Enum):
    APPLY = "apply"
    DUPLICATE = "duplicate"
    RESYNC = "resync"


class SyncCursor:
    """Client-side bookkeeping for the gap-detection contract.

    Versions at or below the cursor are duplicates from at-least-once
    delivery; anything beyond ``version + 1`` is a gap and the client must
    refetch the full plan.
    """

    def __init__(self, version: int = 0) -> None:
        self.version = version

    def accept(self, event: Union[SyncEvent, int]) -> CursorAction:
        version = event.version if isinstance(event, SyncEvent) else int(event)
        if version <= self.version:
            return CursorAction.DUPLICATE
        if version == self.version + 1:
            self.version = version
            return CursorAction.APPLY
        return CursorAction.RESYNC

    def reset(self, version: int) -> None:
        self.version = version
