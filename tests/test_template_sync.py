"""Tests for storage/template_sync.py."""

from __future__ import annotations

import asyncio
import sqlite3
from unittest.mock import AsyncMock

import pytest

from config.settings import ZERO_ADDRESS
from core.errors import NetworkError
from core.event_bus import Event, EventBus, Topic
from models.template import EligibilityType, Template
from storage.state_cache import StateSyncCache
from storage.template_sync import TemplateSyncer

ISSUER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
ACCOUNT = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
ROLE = "0x" + "cd" * 32
UINT256_MAX = 2**256 - 1


def chain_template(template_id: int, current_supply: int = 0) -> Template:
    return Template(template_id=template_id, issuer=ISSUER, max_supply=10, current_supply=current_supply)


def missing(template_id: int) -> Template:
    return Template(template_id=template_id, issuer=ZERO_ADDRESS)


def event(topic: Topic, **payload) -> Event:
    return Event(topic=topic.value, payload=payload, trace_id="t-1")


@pytest.fixture
async def cache():
    c = StateSyncCache("sqlite:///:memory:")
    await c.start()
    yield c
    await c.stop()


@pytest.fixture
def contract() -> AsyncMock:
    mock = AsyncMock()
    mock.get_template.side_effect = lambda template_id: chain_template(template_id, 3)
    return mock


@pytest.fixture
def syncer(contract: AsyncMock, cache: StateSyncCache) -> TemplateSyncer:
    return TemplateSyncer(contract, cache, max_template_id=20, max_consecutive_empty=3)


class TestResolve:
    @pytest.mark.asyncio
    async def test_chain_read_then_cached(
        self, syncer: TemplateSyncer, contract: AsyncMock, cache: StateSyncCache
    ) -> None:
        t = await syncer.resolve(7)
        assert t.current_supply == 3
        assert (await cache.get_template(7)).current_supply == 3

        await syncer.resolve(7)
        assert contract.get_template.await_count == 1

    @pytest.mark.asyncio
    async def test_cached_metadata_is_returned(
        self, syncer: TemplateSyncer, cache: StateSyncCache
    ) -> None:
        await cache.set_template_metadata(7, EligibilityType.WHITELIST)
        t = await syncer.resolve(7)
        assert t.exists
        assert t.eligibility_type == EligibilityType.WHITELIST

    @pytest.mark.asyncio
    async def test_missing_template_not_cached(
        self, syncer: TemplateSyncer, contract: AsyncMock, cache: StateSyncCache
    ) -> None:
        contract.get_template.side_effect = missing
        t = await syncer.resolve(9)
        assert t.exists is False
        assert await cache.get_template(9) is None

    @pytest.mark.asyncio
    async def test_chain_error_propagates(self, syncer: TemplateSyncer, contract: AsyncMock) -> None:
        contract.get_template.side_effect = NetworkError("down")
        with pytest.raises(NetworkError):
            await syncer.resolve(7)

    @pytest.mark.asyncio
    async def test_cache_failure_falls_back_to_chain(self, contract: AsyncMock) -> None:
        stopped = StateSyncCache("sqlite:///:memory:")
        syncer = TemplateSyncer(contract, stopped)
        t = await syncer.resolve(7)
        assert t.current_supply == 3
        assert syncer.pending["templates"] == [7]
        assert syncer.stats["failures"] >= 1


    @pytest.mark.asyncio
    async def test_uint256_fields_round_trip(
        self, syncer: TemplateSyncer, contract: AsyncMock, cache: StateSyncCache
    ) -> None:
        contract.get_template.side_effect = lambda i: Template(
            template_id=i, issuer=ISSUER, max_supply=UINT256_MAX, end_time=2**64
        )
        t = await syncer.resolve(7)
        assert t.max_supply == UINT256_MAX
        assert (await cache.get_template(7)).end_time == 2**64

    @pytest.mark.asyncio
    async def test_any_cache_write_error_falls_back_to_chain(
        self, syncer: TemplateSyncer, cache: StateSyncCache
    ) -> None:
        cache.upsert_template = AsyncMock(side_effect=OverflowError("too large"))
        t = await syncer.resolve(7)
        assert t.current_supply == 3
        assert syncer.pending["templates"] == [7]

    @pytest.mark.asyncio
    async def test_any_cache_read_error_falls_back_to_chain(
        self, syncer: TemplateSyncer, cache: StateSyncCache
    ) -> None:
        cache.get_template = AsyncMock(side_effect=ValueError("bad row"))
        assert (await syncer.resolve(7)).current_supply == 3


class TestRefresh:
    @pytest.mark.asyncio
    async def test_bypasses_cache(
        self, syncer: TemplateSyncer, contract: AsyncMock, cache: StateSyncCache
    ) -> None:
        await cache.upsert_template(chain_template(7).model_copy(update={"is_paused": True}))
        t = await syncer.refresh(7)
        assert t.is_paused is False
        assert (await cache.get_template(7)).is_paused is False
        contract.get_template.assert_awaited_once_with(7)

    @pytest.mark.asyncio
    async def test_keeps_metadata(
        self, syncer: TemplateSyncer, cache: StateSyncCache
    ) -> None:
        await cache.upsert_template(chain_template(7))
        await cache.set_template_metadata(7, EligibilityType.WHITELIST, {"list": "a"})
        t = await syncer.refresh(7)
        assert t.eligibility_type == EligibilityType.WHITELIST
        assert t.requirements == {"list": "a"}

    @pytest.mark.asyncio
    async def test_keeps_metadata_when_cache_write_fails(
        self, syncer: TemplateSyncer, cache: StateSyncCache
    ) -> None:
        await cache.set_template_metadata(7, EligibilityType.WHITELIST)
        cache.upsert_template = AsyncMock(side_effect=sqlite3.OperationalError("locked"))
        t = await syncer.refresh(7)
        assert t.eligibility_type == EligibilityType.WHITELIST
        assert t.current_supply == 3

    @pytest.mark.asyncio
    async def test_chain_error_propagates(self, syncer: TemplateSyncer, contract: AsyncMock) -> None:
        contract.get_template.side_effect = NetworkError("down")
        with pytest.raises(NetworkError):
            await syncer.refresh(7)


class TestSync:
    @pytest.mark.asyncio
    async def test_sync_template(self, syncer: TemplateSyncer, cache: StateSyncCache) -> None:
        result = await syncer.sync_template(4)
        assert result.ok and result.exists
        assert (await cache.get_template(4)).current_supply == 3

    @pytest.mark.asyncio
    async def test_sync_template_never_raises(
        self, syncer: TemplateSyncer, contract: AsyncMock
    ) -> None:
        contract.get_template.side_effect = NetworkError("down")
        result = await syncer.sync_template(4)
        assert not result.ok
        assert syncer.pending["templates"] == [4]

    @pytest.mark.asyncio
    async def test_sync_all_stops_after_empty_streak(
        self, syncer: TemplateSyncer, contract: AsyncMock
    ) -> None:
        contract.get_template.side_effect = (
            lambda i: chain_template(i) if i in (1, 2, 4) else missing(i)
        )
        report = await syncer.sync_all()
        assert report.synced == [1, 2, 4]
        assert report.stopped_at == 7
        assert report.scanned == 7

    @pytest.mark.asyncio
    async def test_sync_all_failures_break_streak(
        self, syncer: TemplateSyncer, contract: AsyncMock
    ) -> None:
        def read(i: int) -> Template:
            if i in (2, 3):
                raise NetworkError("flaky")
            return chain_template(i) if i == 1 else missing(i)

        contract.get_template.side_effect = read
        report = await syncer.sync_all()
        assert report.failed == [2, 3]
        assert report.stopped_at == 6

    @pytest.mark.asyncio
    async def test_sync_template_large_values_never_raise(
        self, syncer: TemplateSyncer, contract: AsyncMock, cache: StateSyncCache
    ) -> None:
        contract.get_template.side_effect = lambda i: Template(
            template_id=i, issuer=ISSUER, end_time=2**64
        )
        result = await syncer.sync_template(7)
        assert result.ok
        assert (await cache.get_template(7)).end_time == 2**64

    @pytest.mark.asyncio
    async def test_retry_pending(self, syncer: TemplateSyncer, contract: AsyncMock) -> None:
        contract.get_template.side_effect = NetworkError("down")
        await syncer.sync_template(5)

        contract.get_template.side_effect = lambda i: chain_template(i)
        assert await syncer.retry_pending() == 1
        assert syncer.pending == {"templates": [], "events": 0}


class TestEvents:
    @pytest.mark.asyncio
    async def test_claim_on_known_template(
        self, syncer: TemplateSyncer, contract: AsyncMock, cache: StateSyncCache
    ) -> None:
        await cache.upsert_template(chain_template(7, 3))
        ok = await syncer.apply_event(
            event(Topic.CARD_ISSUED, card_id=1, profile_id=11, template_id=7, claim_type="direct")
        )
        assert ok
        assert (await cache.get_template(7)).current_supply == 4
        assert (await cache.claim_history(7))[0].claim_type.value == "direct"
        contract.get_template.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_replayed_claim_counted_once(
        self, syncer: TemplateSyncer, cache: StateSyncCache
    ) -> None:
        await cache.upsert_template(chain_template(7, 3))
        ev = event(Topic.CARD_CLAIMED, card_id=1, profile_id=11, template_id=7)
        await syncer.apply_event(ev)
        await syncer.apply_event(ev)
        assert (await cache.get_template(7)).current_supply == 4

    @pytest.mark.asyncio
    async def test_claim_on_unknown_template_syncs_it(
        self, syncer: TemplateSyncer, contract: AsyncMock, cache: StateSyncCache
    ) -> None:
        await syncer.apply_event(event(Topic.CARD_ISSUED, card_id=1, profile_id=11, template_id=8))
        # supply comes from the chain, which already counts the mint
        assert (await cache.get_template(8)).current_supply == 3
        assert await cache.has_claimed(11, 8)

    @pytest.mark.asyncio
    async def test_template_created(
        self, syncer: TemplateSyncer, cache: StateSyncCache
    ) -> None:
        assert await syncer.apply_event(event(Topic.TEMPLATE_CREATED, template_id=12, issuer=ISSUER))
        assert await cache.get_template(12) is not None

    @pytest.mark.asyncio
    async def test_roles(self, syncer: TemplateSyncer, cache: StateSyncCache) -> None:
        await syncer.apply_event(event(Topic.ROLE_GRANTED, role=ROLE, account=ACCOUNT))
        assert await cache.has_role(ROLE, ACCOUNT)
        await syncer.apply_event(event(Topic.ROLE_REVOKED, role=ROLE, account=ACCOUNT))
        assert not await cache.has_role(ROLE, ACCOUNT)

    @pytest.mark.asyncio
    async def test_failed_event_queued_and_retried(
        self, syncer: TemplateSyncer, contract: AsyncMock, cache: StateSyncCache
    ) -> None:
        contract.get_template.side_effect = NetworkError("down")
        ok = await syncer.apply_event(event(Topic.TEMPLATE_CREATED, template_id=12, issuer=ISSUER))
        assert ok is False
        assert syncer.pending["events"] == 1

        contract.get_template.side_effect = lambda i: chain_template(i)
        assert await syncer.retry_pending() >= 1
        assert syncer.pending == {"templates": [], "events": 0}
        assert await cache.get_template(12) is not None

    @pytest.mark.asyncio
    async def test_malformed_payload_does_not_raise(self, syncer: TemplateSyncer) -> None:
        assert await syncer.apply_event(event(Topic.CARD_ISSUED, card_id=1)) is False


class TestBusIntegration:
    @pytest.mark.asyncio
    async def test_consumes_bus_events(
        self, contract: AsyncMock, cache: StateSyncCache
    ) -> None:
        bus = EventBus()
        syncer = TemplateSyncer(contract, cache, event_bus=bus)
        await syncer.start()
        try:
            await bus.publish(Topic.ROLE_GRANTED, {"role": ROLE, "account": ACCOUNT})
            for _ in range(50):
                if await cache.has_role(ROLE, ACCOUNT):
                    break
                await asyncio.sleep(0.01)
            assert await cache.has_role(ROLE, ACCOUNT)
        finally:
            await syncer.stop()
        assert bus.subscriber_count(Topic.ROLE_GRANTED) == 0
