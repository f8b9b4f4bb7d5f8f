"""TemplateSyncer — keeps the state sync cache in step with the contract.

Three inputs feed the cache:

- ``resolve()``: the redemption path's cache-or-chain template lookup;
- ``sync_template()`` / ``sync_all()``: explicit resync from ``templates(id)``;
- ``apply_event()``: claim, template and role events from the event bus.

Cache failures are logged as ``CacheSyncError``, queued and retried by a
background loop.  They never reach the redemption path.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from core.errors import CacheSyncError
from core.event_bus import Event, EventBus, Topic
from models.claim import ClaimRecord, ClaimType
from models.template import Template
from storage.state_cache import StateSyncCache
from web3_infra.reputation_card import ReputationCardClient

logger = structlog.get_logger("storage.template_sync")


# card_claimed is applied by the redemption flow itself, before it returns.
_SUBSCRIBED_TOPICS = (
    Topic.CARD_ISSUED,
    Topic.TEMPLATE_CREATED,
    Topic.ROLE_GRANTED,
    Topic.ROLE_REVOKED,
)


@dataclass(frozen=True)
class TemplateSyncResult:
    template_id: int
    exists: bool
    template: Template | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncReport:
    """Outcome of a ``sync_all()`` scan."""

    scanned: int = 0
    synced: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    stopped_at: int | None = None


class TemplateSyncer:
    """Chain → cache synchronisation.

    Parameters
    ----------
    contract:
        Source of ``templates(id)`` reads.
    cache:
        Target mirror.
    event_bus:
        Source of claim/template/role events once ``start()`` is called.
    max_template_id:
        Upper bound of the ``sync_all()`` scan.
    max_consecutive_empty:
        ``sync_all()`` stops after this many non-existent ids in a row.
    retry_interval_s:
        Period of the background retry loop.
    """

    def __init__(
        self,
        contract: ReputationCardClient,
        cache: StateSyncCache,
        event_bus: EventBus | None = None,
        max_template_id: int = 100,
        max_consecutive_empty: int = 5,
        retry_interval_s: float = 30.0,
    ) -> None:
        self._contract = contract
        self._cache = cache
        self._bus = event_bus
        self._max_template_id = max_template_id
        self._max_consecutive_empty = max_consecutive_empty
        self._retry_interval_s = retry_interval_s

        self._pending_templates: set[int] = set()
        self._pending_events: list[Event] = []
        self._tasks: list[asyncio.Task[None]] = []

        self._stats_synced: int = 0
        self._stats_failures: int = 0
        self._stats_events: int = 0

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Subscribe to the event bus and start the retry loop. Idempotent."""
        if self._tasks:
            return
        if self._bus is not None:
            for topic in _SUBSCRIBED_TOPICS:
                self._tasks.append(
                    asyncio.create_task(self._consume(topic), name=f"template_sync.{topic.value}")
                )
        self._tasks.append(asyncio.create_task(self._retry_loop(), name="template_sync.retry"))
        # Let the consumers register their queues before anyone publishes.
        await asyncio.sleep(0)
        logger.info("template_sync.started", topics=[t.value for t in _SUBSCRIBED_TOPICS])

    async def stop(self) -> None:
        if not self._tasks:
            return
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._pending_templates or self._pending_events:
            logger.warning("template_sync.stopped_with_pending", **self.pending)
        logger.info("template_sync.stopped", **self.stats)

    # ── Lookup ───────────────────────────────────────────────────

    async def resolve(self, template_id: int) -> Template:
        """Cached template, or a fresh chain read when the cache has none.

        Chain read errors propagate (they are redemption errors).  Cache
        errors are logged and the chain value is used.
        """
        cached = await self._cached(template_id)
        if cached is not None and cached.exists:
            return cached
        return await self._read_through(template_id, cached)

    async def refresh(self, template_id: int) -> Template:
        """Re-read ``templates(template_id)`` from the chain, bypassing the cache.

        Used when a cached row may be stale (pause, window or supply
        changes the watcher has not mirrored).  Off-chain metadata of the
        cached row is kept.  Chain read errors propagate.
        """
        return await self._read_through(template_id, await self._cached(template_id))

    async def _read_through(self, template_id: int, cached: Template | None) -> Template:
        template = await self._contract.get_template(template_id)
        if cached is not None:
            template = template.model_copy(
                update={
                    "eligibility_type": cached.eligibility_type,
                    "requirements": cached.requirements,
                }
            )
        if template.exists and await self._store(template):
            merged = await self._cached(template_id)
            if merged is not None:
                return merged
        return template

    # ── Sync ─────────────────────────────────────────────────────

    async def sync_template(self, template_id: int) -> TemplateSyncResult:
        """Read ``templates(template_id)`` and upsert it.  Never raises."""
        try:
            template = await self._contract.get_template(template_id)
        except Exception as exc:
            self._record_failure(
                CacheSyncError(f"Template read failed: {exc}", template_id=template_id)
            )
            self._pending_templates.add(template_id)
            return TemplateSyncResult(template_id, exists=False, error=str(exc))

        if not template.exists:
            self._pending_templates.discard(template_id)
            return TemplateSyncResult(template_id, exists=False)

        if not await self._store(template):
            return TemplateSyncResult(
                template_id, exists=True, template=template, error="cache write failed"
            )

        self._pending_templates.discard(template_id)
        self._stats_synced += 1
        return TemplateSyncResult(template_id, exists=True, template=template)

    async def sync_all(self) -> SyncReport:
        """Scan ids ``1..max_template_id``.

        Stops early after ``max_consecutive_empty`` non-existent templates in
        a row.  Failed reads are queued for retry and do not count as empty.
        """
        report = SyncReport()
        empty_streak = 0

        for template_id in range(1, self._max_template_id + 1):
            result = await self.sync_template(template_id)
            report.scanned += 1

            if not result.ok:
                report.failed.append(template_id)
                empty_streak = 0
            elif result.exists:
                report.synced.append(template_id)
                empty_streak = 0
            else:
                empty_streak += 1
                if empty_streak >= self._max_consecutive_empty:
                    report.stopped_at = template_id
                    break

        logger.info(
            "template_sync.sync_all_done",
            scanned=report.scanned,
            synced=len(report.synced),
            failed=len(report.failed),
            stopped_at=report.stopped_at,
        )
        return report

    # ── Events ───────────────────────────────────────────────────

    async def apply_event(self, event: Event) -> bool:
        """Mirror one bus event into the cache.  Never raises.

        Returns ``False`` when the event failed and was queued for retry.
        """
        try:
            await self._apply(event)
        except Exception as exc:
            self._record_failure(
                CacheSyncError(
                    f"Applying {event.topic} failed: {exc}",
                    template_id=event.payload.get("template_id"),
                )
            )
            self._pending_events.append(event)
            return False
        self._stats_events += 1
        return True

    async def _apply(self, event: Event) -> None:
        payload = event.payload
        topic = event.topic

        if topic in (Topic.CARD_CLAIMED.value, Topic.CARD_ISSUED.value):
            template_id = int(payload["template_id"])
            record = ClaimRecord(
                profile_id=int(payload["profile_id"]),
                template_id=template_id,
                card_id=int(payload["card_id"]),
                claim_type=ClaimType(payload.get("claim_type", ClaimType.SIGNATURE.value)),
                tx_hash=payload.get("tx_hash"),
            )
            known = await self._cache.get_template(template_id) is not None
            await self._cache.apply_claim(record)
            if not known:
                # Chain supply already counts this mint.
                await self.sync_template(template_id)
        elif topic == Topic.TEMPLATE_CREATED.value:
            result = await self.sync_template(int(payload["template_id"]))
            if not result.ok:
                raise CacheSyncError(result.error or "sync failed", template_id=result.template_id)
        elif topic in (Topic.ROLE_GRANTED.value, Topic.ROLE_REVOKED.value):
            await self._cache.set_role(
                str(payload["role"]),
                str(payload["account"]),
                granted=topic == Topic.ROLE_GRANTED.value,
            )
        else:
            logger.debug("template_sync.event_ignored", topic=topic)

    # ── Retry ────────────────────────────────────────────────────

    @property
    def pending(self) -> dict[str, Any]:
        return {
            "templates": sorted(self._pending_templates),
            "events": len(self._pending_events),
        }

    async def retry_pending(self) -> int:
        """Retry every queued template and event; returns how many succeeded."""
        succeeded = 0
        for template_id in sorted(self._pending_templates):
            if (await self.sync_template(template_id)).ok:
                succeeded += 1

        events, self._pending_events = self._pending_events, []
        for event in events:
            if await self.apply_event(event):
                succeeded += 1

        if succeeded:
            logger.info("template_sync.retried", succeeded=succeeded, **self.pending)
        return succeeded

    async def _retry_loop(self) -> None:
        while True:
            await asyncio.sleep(self._retry_interval_s)
            if self._pending_templates or self._pending_events:
                await self.retry_pending()

    async def _consume(self, topic: Topic) -> None:
        assert self._bus is not None
        async for event in self._bus.subscribe(topic):
            await self.apply_event(event)

    # ── Helpers ──────────────────────────────────────────────────

    async def _cached(self, template_id: int) -> Template | None:
        try:
            return await self._cache.get_template(template_id)
        except Exception as exc:
            self._record_failure(CacheSyncError(f"Cache read failed: {exc}", template_id))
            return None

    async def _store(self, template: Template) -> bool:
        try:
            await self._cache.upsert_template(template)
        except Exception as exc:
            self._record_failure(
                CacheSyncError(f"Cache write failed: {exc}", template.template_id)
            )
            self._pending_templates.add(template.template_id)
            return False
        return True

    def _record_failure(self, error: CacheSyncError) -> None:
        self._stats_failures += 1
        logger.warning(
            "template_sync.failed",
            template_id=error.template_id,
            error=str(error),
        )

    @property
    def stats(self) -> dict[str, int]:
        return {
            "synced": self._stats_synced,
            "failures": self._stats_failures,
            "events_applied": self._stats_events,
        }
