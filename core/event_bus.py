"""EventBus — asyncio.Queue fan-out for chain events and redemption progress.

Producers are the chain event watcher (``TemplateCreated``, ``CardIssued``,
role changes) and the redemption flow (state transitions, confirmed claims).
The template syncer is the main consumer: it mirrors claim events into the
state sync cache.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator
from uuid import uuid4

import structlog

logger = structlog.get_logger("core.event_bus")


class Topic(str, Enum):
    """Well-known event topics."""

    TEMPLATE_CREATED = "template_created"
    CARD_ISSUED = "card_issued"          # observed on-chain by the watcher
    CARD_CLAIMED = "card_claimed"        # confirmed by a local redemption
    ROLE_GRANTED = "role_granted"
    ROLE_REVOKED = "role_revoked"
    REDEMPTION = "redemption"            # redemption state transitions


@dataclass(frozen=True, slots=True)
class Event:
    """Immutable event flowing through the EventBus."""

    topic: str
    payload: dict[str, Any]
    trace_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Fan-out pub/sub event bus backed by asyncio.Queue.

    Every ``subscribe(topic)`` call gets its own bounded queue, so a slow
    consumer only drops its own events.  ``publish()`` never blocks the
    producer: a full queue drops the event and counts it.

    Usage::

        bus = EventBus()
        async for event in bus.subscribe(Topic.CARD_CLAIMED):
            await cache.apply_claim(...)

        await bus.publish(Topic.CARD_CLAIMED, {"template_id": 7, ...})
    """

    def __init__(self, maxsize: int = 1024) -> None:
        self._maxsize = maxsize
        self._subscribers: dict[str, list[asyncio.Queue[Event]]] = {}
        self._lock = asyncio.Lock()
        self._stats_published: int = 0
        self._stats_dropped: int = 0

    # ── Publish ──────────────────────────────────────────────────

    async def publish(
        self,
        topic: str | Topic,
        payload: dict[str, Any],
        trace_id: str | None = None,
    ) -> Event:
        """Publish *payload* to every subscriber of *topic*.

        ``trace_id`` correlates the events of one redemption or one sync
        pass; a UUID4 is generated when omitted.
        """
        key = _topic_key(topic)
        event = Event(topic=key, payload=payload, trace_id=trace_id or str(uuid4()))

        for q in self._subscribers.get(key, []):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                self._stats_dropped += 1
                logger.warning(
                    "event_bus.queue_full",
                    topic=key,
                    trace_id=event.trace_id,
                    queue_size=q.qsize(),
                )

        self._stats_published += 1
        return event

    # ── Subscribe ────────────────────────────────────────────────

    async def subscribe(self, topic: str | Topic) -> AsyncIterator[Event]:
        """Yield events published on *topic* until the consumer is cancelled."""
        key = _topic_key(topic)
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._maxsize)

        async with self._lock:
            self._subscribers.setdefault(key, []).append(queue)

        try:
            while True:
                yield await queue.get()
        finally:
            async with self._lock:
                subs = self._subscribers.get(key, [])
                if queue in subs:
                    subs.remove(queue)
                if not subs:
                    self._subscribers.pop(key, None)

    # ── Introspection ────────────────────────────────────────────

    @property
    def topics(self) -> list[str]:
        return list(self._subscribers.keys())

    def subscriber_count(self, topic: str | Topic) -> int:
        return len(self._subscribers.get(_topic_key(topic), []))

    @property
    def stats(self) -> dict[str, int]:
        return {
            "published": self._stats_published,
            "dropped": self._stats_dropped,
        }


def _topic_key(topic: str | Topic) -> str:
    return topic.value if isinstance(topic, Topic) else topic
