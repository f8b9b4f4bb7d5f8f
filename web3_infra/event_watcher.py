"""ChainEventWatcher — polls ReputationCard logs and publishes them on the bus.

Each poll reads ``[cursor + 1, latest]`` in chunks of ``block_chunk_size``
blocks.  The cursor is persisted in the state cache after every chunk so a
restart resumes where it left off.  Events of one chunk are published in
(block, log index) order.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog

from config.settings import Settings
from core.event_bus import EventBus, Topic
from storage.state_cache import StateSyncCache
from web3_infra.reputation_card import WATCHED_EVENTS, ReputationCardClient

logger = structlog.get_logger("web3_infra.event_watcher")

CURSOR_NAME = "reputation_card_events"

_EVENT_TOPICS: dict[str, Topic] = {
    "TemplateCreated": Topic.TEMPLATE_CREATED,
    "CardIssued": Topic.CARD_ISSUED,
    "RoleGranted": Topic.ROLE_GRANTED,
    "RoleRevoked": Topic.ROLE_REVOKED,
}


@dataclass
class WatcherConfig:
    poll_interval_s: float = 12.0
    block_chunk_size: int = 1000
    start_block: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> WatcherConfig:
        return cls(
            poll_interval_s=settings.WATCHER_POLL_INTERVAL_SECONDS,
            block_chunk_size=settings.WATCHER_BLOCK_CHUNK_SIZE,
            start_block=settings.WATCHER_START_BLOCK,
        )


class ChainEventWatcher:
    """Background poller of contract events."""

    def __init__(
        self,
        contract: ReputationCardClient,
        cache: StateSyncCache,
        event_bus: EventBus,
        config: WatcherConfig | None = None,
    ) -> None:
        self._contract = contract
        self._cache = cache
        self._bus = event_bus
        self._config = config or WatcherConfig()
        self._task: asyncio.Task[None] | None = None
        self._stats_polls: int = 0
        self._stats_events: int = 0

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the poll loop. Idempotent."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._poll_loop(), name="chain_event_watcher")
        logger.info(
            "event_watcher.started",
            poll_interval_s=self._config.poll_interval_s,
            chunk=self._config.block_chunk_size,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("event_watcher.stopped", **self.stats)

    # ── Polling ──────────────────────────────────────────────────

    async def poll_once(self) -> int:
        """Process every block up to the chain head; returns events published."""
        self._stats_polls += 1
        cursor = await self._cache.get_cursor(CURSOR_NAME)
        if cursor is None:
            cursor = self._config.start_block - 1
        head = await self._contract.latest_block()

        published = 0
        from_block = cursor + 1
        while from_block <= head:
            to_block = min(from_block + self._config.block_chunk_size - 1, head)
            events = await self._fetch_chunk(from_block, to_block)
            for event in events:
                await self._publish(event)
            published += len(events)
            await self._cache.set_cursor(CURSOR_NAME, to_block)
            from_block = to_block + 1

        self._stats_events += published
        if published:
            logger.info("event_watcher.polled", events=published, head=head)
        return published

    async def _fetch_chunk(self, from_block: int, to_block: int) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        for name in WATCHED_EVENTS:
            events.extend(await self._contract.get_events(name, from_block, to_block))
        events.sort(key=lambda e: (e["block_number"], e["log_index"]))
        return events

    async def _publish(self, event: dict[str, Any]) -> None:
        args = event["args"]
        name = event["event"]
        payload: dict[str, Any] = {
            "block_number": event["block_number"],
            "tx_hash": event["tx_hash"],
        }

        if name == "CardIssued":
            claim_type = await self._contract.classify_claim_type(event["tx_hash"])
            payload.update(
                card_id=int(args["cardId"]),
                profile_id=int(args["profileId"]),
                template_id=int(args["templateId"]),
                issuer=args["issuer"],
                claim_type=claim_type.value,
            )
        elif name == "TemplateCreated":
            payload.update(template_id=int(args["templateId"]), issuer=args["issuer"])
        else:
            payload.update(role=args["role"], account=args["account"])

        await self._bus.publish(_EVENT_TOPICS[name], payload)

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("event_watcher.poll_failed", error=str(exc))
            await asyncio.sleep(self._config.poll_interval_s)

    @property
    def stats(self) -> dict[str, int]:
        return {"polls": self._stats_polls, "events": self._stats_events}
