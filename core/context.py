"""AppContext — builds and owns every long-lived component.

Construction wires components from ``Settings``; ``start()`` opens
connections and background loops in dependency order and ``stop()``
releases them in reverse.  Nothing is created at import time.

Usage::

    async with AppContext(settings) as ctx:
        outcome = await ctx.redemption_flow().redeem(signed, claimant)
"""

from __future__ import annotations

from typing import Any

import structlog

from claims.issuance import ClaimLinkIssuer
from claims.membership import MembershipResolver
from claims.redemption import RedemptionFlow
from claims.verifier import RedemptionVerifier
from config.settings import Settings
from core.event_bus import EventBus
from storage.state_cache import StateSyncCache
from storage.template_sync import TemplateSyncer
from web3_infra.eip712_signer import ClaimSigner
from web3_infra.event_watcher import ChainEventWatcher, WatcherConfig
from web3_infra.reputation_card import ReputationCardClient, ReputationCardConfig
from web3_infra.retry import ResilientFetcher, RetryPolicy
from web3_infra.rpc_manager import RPCManager, RPCManagerConfig

logger = structlog.get_logger("core.context")


class AppContext:
    """Explicitly passed container of the claim services."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

        self.event_bus = EventBus()
        self.fetcher = ResilientFetcher(RetryPolicy.from_settings(settings))
        self.rpc = RPCManager(settings.RPC_URLS, RPCManagerConfig.from_settings(settings))
        self.contract = ReputationCardClient(
            self.rpc, self.fetcher, ReputationCardConfig.from_settings(settings)
        )
        self.cache = StateSyncCache(settings.CACHE_DSN)
        self.syncer = TemplateSyncer(
            self.contract,
            self.cache,
            self.event_bus,
            max_template_id=settings.SYNC_MAX_TEMPLATE_ID,
            max_consecutive_empty=settings.SYNC_MAX_CONSECUTIVE_EMPTY,
            retry_interval_s=settings.SYNC_RETRY_INTERVAL_SECONDS,
        )
        self.verifier = RedemptionVerifier(settings.CHAIN_ID, settings.REPUTATION_CARD_ADDRESS)
        self.membership = MembershipResolver(self.contract)
        self.watcher: ChainEventWatcher | None = None
        if settings.WATCHER_ENABLED:
            self.watcher = ChainEventWatcher(
                self.contract,
                self.cache,
                self.event_bus,
                WatcherConfig.from_settings(settings),
            )

        self._signer: ClaimSigner | None = None
        self._started = False

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Start RPC, cache, syncer and (if enabled) the watcher. Idempotent."""
        if self._started:
            return
        await self.rpc.start()
        await self.cache.start()
        await self.syncer.start()
        if self.watcher is not None:
            await self.watcher.start()
        self._started = True
        logger.info(
            "context.started",
            env=self.settings.APP_ENV,
            chain_id=self.settings.CHAIN_ID,
            watcher=self.watcher is not None,
        )

    async def stop(self) -> None:
        # The signer is usable without start() (offline link issuance).
        if self._signer is not None:
            self._signer.shutdown()
            self._signer = None
        if not self._started:
            return
        if self.watcher is not None:
            await self.watcher.stop()
        await self.syncer.stop()
        await self.cache.stop()
        await self.rpc.stop()
        self._started = False
        logger.info("context.stopped")

    async def __aenter__(self) -> AppContext:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ── Factories ────────────────────────────────────────────────

    def redemption_flow(self) -> RedemptionFlow:
        return RedemptionFlow(
            contract=self.contract,
            cache=self.cache,
            syncer=self.syncer,
            verifier=self.verifier,
            membership=self.membership,
            event_bus=self.event_bus,
        )

    def claim_signer(self) -> ClaimSigner:
        """Local issuer signer from ``ISSUER_PRIVATE_KEY``, started on first use."""
        if self._signer is None:
            if not self.settings.ISSUER_PRIVATE_KEY:
                raise RuntimeError("ISSUER_PRIVATE_KEY is not set")
            self._signer = ClaimSigner(
                chain_id=self.settings.CHAIN_ID,
                verifying_contract=self.settings.REPUTATION_CARD_ADDRESS,
                private_key=self.settings.ISSUER_PRIVATE_KEY,
                fetcher=self.fetcher,
            )
            self._signer.start()
        return self._signer

    def link_issuer(self) -> ClaimLinkIssuer:
        return ClaimLinkIssuer(self.claim_signer(), self.settings.CLAIM_BASE_URL)
