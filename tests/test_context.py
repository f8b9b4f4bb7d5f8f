"""Tests for core/context.py — wiring and lifecycle without network."""

from __future__ import annotations

import pytest

from config.settings import Settings
from core.context import AppContext


@pytest.fixture
def settings(contract_address: str) -> Settings:
    return Settings(
        REPUTATION_CARD_ADDRESS=contract_address,
        CACHE_DSN="sqlite:///:memory:",
        RPC_URLS=["http://127.0.0.1:1"],
    )


class TestAppContext:
    def test_watcher_disabled_by_default(self, settings: Settings) -> None:
        assert AppContext(settings).watcher is None

    def test_watcher_enabled(self, contract_address: str) -> None:
        ctx = AppContext(
            Settings(
                REPUTATION_CARD_ADDRESS=contract_address,
                CACHE_DSN="sqlite:///:memory:",
                WATCHER_ENABLED=True,
            )
        )
        assert ctx.watcher is not None

    def test_claim_signer_requires_key(self, settings: Settings) -> None:
        with pytest.raises(RuntimeError, match="ISSUER_PRIVATE_KEY"):
            AppContext(settings).claim_signer()

    @pytest.mark.asyncio
    async def test_claim_signer_reused_and_shut_down(
        self, contract_address: str, issuer_key: str, issuer_address: str
    ) -> None:
        ctx = AppContext(
            Settings(
                REPUTATION_CARD_ADDRESS=contract_address,
                CACHE_DSN="sqlite:///:memory:",
                ISSUER_PRIVATE_KEY=issuer_key,
            )
        )
        signer = ctx.claim_signer()
        assert ctx.claim_signer() is signer
        assert signer.address == issuer_address

        await ctx.stop()
        assert signer._pool is None

    @pytest.mark.asyncio
    async def test_start_stop(self, settings: Settings) -> None:
        async with AppContext(settings) as ctx:
            assert await ctx.cache.list_templates() == []
            assert ctx.redemption_flow() is not None
        with pytest.raises(RuntimeError):
            await ctx.cache.list_templates()
