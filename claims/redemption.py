"""Redemption — turn a SignedGrant into a minted card.

The flow is an explicit state machine::

    IDLE → VALIDATING → AWAITING_SIGNATURE → SUBMITTING → CONFIRMING → SUCCESS
                 └────────────┴──────────────────┴────────────┴──────→ FAILED

- VALIDATING: template lookup and template rules (re-read from the chain
  when a cached row says paused, outside the window or sold out), then
  profile + membership reads, remaining rules, issuer signature check.
- AWAITING_SIGNATURE: claim transaction simulated and built, waiting on the
  claimant's transaction signer.
- SUBMITTING: single broadcast of the signed transaction.
- CONFIRMING: waiting for the receipt of the locally computed hash.  From
  here on the transaction is never sent again.

Every transition is published on the ``redemption`` topic.  A confirmed
mint is written to the cache through the syncer before ``redeem()``
returns, and published on ``card_claimed`` for other subscribers.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

import structlog

from claims.eligibility import (
    CHAIN_STATE_REASONS,
    IneligibilityReason,
    check_template_state,
    evaluate_eligibility,
)
from claims.membership import MembershipResolver
from claims.verifier import RedemptionVerifier
from core.errors import ClaimError, NotEligible, UserRejected, classify_error
from core.event_bus import Event, EventBus, Topic
from core.logger import bind_claim_context, clear_claim_context
from models.claim import ClaimRecord, ClaimType, Recipient, SignedGrant
from models.template import EligibilityType, Template
from storage.state_cache import StateSyncCache
from storage.template_sync import TemplateSyncer
from web3_infra.reputation_card import ReputationCardClient, TransactionSigner

logger = structlog.get_logger("claims.redemption")


class RedemptionState(str, Enum):
    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    AWAITING_SIGNATURE = "AWAITING_SIGNATURE"
    SUBMITTING = "SUBMITTING"
    CONFIRMING = "CONFIRMING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class RedemptionEvent(str, Enum):
    START = "START"
    VALIDATED = "VALIDATED"
    SIGNED = "SIGNED"
    BROADCAST = "BROADCAST"
    CONFIRMED = "CONFIRMED"
    FAIL = "FAIL"


_TRANSITIONS: dict[tuple[RedemptionState, RedemptionEvent], RedemptionState] = {
    (RedemptionState.IDLE, RedemptionEvent.START): RedemptionState.VALIDATING,
    (RedemptionState.VALIDATING, RedemptionEvent.VALIDATED): RedemptionState.AWAITING_SIGNATURE,
    (RedemptionState.AWAITING_SIGNATURE, RedemptionEvent.SIGNED): RedemptionState.SUBMITTING,
    (RedemptionState.SUBMITTING, RedemptionEvent.BROADCAST): RedemptionState.CONFIRMING,
    (RedemptionState.CONFIRMING, RedemptionEvent.CONFIRMED): RedemptionState.SUCCESS,
    (RedemptionState.VALIDATING, RedemptionEvent.FAIL): RedemptionState.FAILED,
    (RedemptionState.AWAITING_SIGNATURE, RedemptionEvent.FAIL): RedemptionState.FAILED,
    (RedemptionState.SUBMITTING, RedemptionEvent.FAIL): RedemptionState.FAILED,
    (RedemptionState.CONFIRMING, RedemptionEvent.FAIL): RedemptionState.FAILED,
}

TERMINAL_STATES = frozenset({RedemptionState.SUCCESS, RedemptionState.FAILED})


class InvalidTransition(RuntimeError):
    """An event was fired that the current state does not accept."""


@dataclass(frozen=True)
class TransitionRecord:
    source: RedemptionState
    event: RedemptionEvent
    target: RedemptionState
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RedemptionStateMachine:
    """Holds the state of one redemption attempt."""

    def __init__(self) -> None:
        self._state = RedemptionState.IDLE
        self._history: list[TransitionRecord] = []

    @property
    def state(self) -> RedemptionState:
        return self._state

    @property
    def history(self) -> list[TransitionRecord]:
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def fire(self, event: RedemptionEvent) -> RedemptionState:
        """Apply *event*; raises ``InvalidTransition`` if not allowed."""
        target = _TRANSITIONS.get((self._state, event))
        if target is None:
            raise InvalidTransition(f"{event.value} not allowed in state {self._state.value}")
        self._history.append(TransitionRecord(self._state, event, target))
        self._state = target
        return target


@dataclass(frozen=True)
class RedemptionOutcome:
    """Result of ``RedemptionFlow.redeem()``.

    ``silent`` is set when the claimant declined to sign: the attempt ended
    without an error worth showing.
    """

    state: RedemptionState
    trace_id: str
    tx_hash: str | None = None
    card_id: int | None = None
    error: ClaimError | None = None
    silent: bool = False
    history: tuple[TransitionRecord, ...] = ()

    @property
    def success(self) -> bool:
        return self.state == RedemptionState.SUCCESS


class RedemptionFlow:
    """Validate, submit and confirm one claim.

    Parameters
    ----------
    contract:
        Chain access for reads and the claim transaction.
    cache:
        Advisory claim history.
    syncer:
        Template lookup (cache first, chain on miss).
    verifier:
        Issuer signature check.
    membership:
        Rule 6 resolver for non-OPEN templates.
    event_bus:
        Receives state transitions and confirmed claims.
    clock:
        Unix time source for the claim window check.
    """

    def __init__(
        self,
        contract: ReputationCardClient,
        cache: StateSyncCache,
        syncer: TemplateSyncer,
        verifier: RedemptionVerifier,
        membership: MembershipResolver,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._contract = contract
        self._cache = cache
        self._syncer = syncer
        self._verifier = verifier
        self._membership = membership
        self._bus = event_bus
        self._clock = clock

    # ── Public API ───────────────────────────────────────────────

    async def check(self, signed: SignedGrant) -> tuple[Template, Recipient]:
        """Run the VALIDATING step alone (no transaction).

        Raises
        ------
        NotEligible
            If an eligibility rule fails.
        SignerMismatch
            If the grant was not signed by the template issuer.
        """
        grant = signed.grant
        now = int(self._clock())
        template = await self._syncer.resolve(grant.template_id)

        # Template rules first: no recipient reads for a paused or ended template.
        state = check_template_state(template, now=now)
        if state.reason in CHAIN_STATE_REASONS:
            logger.info("redemption.template_recheck", reason=state.reason.value)
            template = await self._syncer.refresh(grant.template_id)
            state = check_template_state(template, now=now)
        state.raise_for_status()

        profile_id = await self._contract.profile_id_of(grant.profile_owner)
        recipient = Recipient(address=grant.user, profile_id=profile_id or None)

        membership: bool | None = True
        if template.eligibility_type != EligibilityType.OPEN:
            membership = await self._membership.resolve(template, recipient)

        history = await self._claim_history(recipient)
        result = evaluate_eligibility(
            template,
            history,
            recipient,
            now=now,
            membership=membership,
        )
        result.raise_for_status()

        # The cache may lag behind the chain.
        if recipient.profile_id and await self._contract.has_profile_claimed(
            template.template_id, recipient.profile_id
        ):
            raise NotEligible(
                IneligibilityReason.ALREADY_CLAIMED.value,
                "You have already claimed this card.",
            )

        self._verifier.verify(signed, template)
        return template, recipient

    async def redeem(self, signed: SignedGrant, tx_signer: TransactionSigner) -> RedemptionOutcome:
        """Redeem *signed* with the claimant's *tx_signer*.

        Classified failures end in a FAILED outcome.  Unclassified errors
        move the machine to FAILED and propagate.  Cancellation propagates
        as-is; once a hash exists the transaction may still be mined.
        """
        grant = signed.grant
        machine = RedemptionStateMachine()
        trace_id = str(uuid4())
        tx_hash: str | None = None
        bind_claim_context(trace_id=trace_id, template_id=grant.template_id, nonce=grant.nonce)

        try:
            await self._fire(machine, RedemptionEvent.START, trace_id)
            _, recipient = await self.check(signed)
            await self._fire(machine, RedemptionEvent.VALIDATED, trace_id)

            tx = await self._contract.build_claim_transaction(signed, sender=tx_signer.address)
            raw_tx = await tx_signer.sign_transaction(tx)
            await self._fire(machine, RedemptionEvent.SIGNED, trace_id)

            tx_hash = await self._contract.broadcast(raw_tx)
            bind_claim_context(tx_hash=tx_hash)
            await self._fire(machine, RedemptionEvent.BROADCAST, trace_id, tx_hash=tx_hash)

            receipt = await self._contract.wait_for_receipt(tx_hash)
            card_id = self._card_id(receipt, recipient)
            await self._fire(machine, RedemptionEvent.CONFIRMED, trace_id, tx_hash=tx_hash)

            if card_id is not None and recipient.profile_id:
                await self._record_claim(
                    ClaimRecord(
                        profile_id=recipient.profile_id,
                        template_id=grant.template_id,
                        card_id=card_id,
                        claim_type=ClaimType.SIGNATURE,
                        tx_hash=tx_hash,
                    ),
                    trace_id,
                )

            logger.info("redemption.succeeded", card_id=card_id)
            return RedemptionOutcome(
                state=machine.state,
                trace_id=trace_id,
                tx_hash=tx_hash,
                card_id=card_id,
                history=tuple(machine.history),
            )

        except asyncio.CancelledError:
            logger.warning("redemption.abandoned", state=machine.state.value, tx_hash=tx_hash)
            raise

        except Exception as exc:
            error = classify_error(exc)
            if not machine.is_terminal and machine.state != RedemptionState.IDLE:
                await self._fire(
                    machine,
                    RedemptionEvent.FAIL,
                    trace_id,
                    tx_hash=tx_hash,
                    error_kind=error.kind.value if error else None,
                )
            if error is None:
                logger.exception("redemption.unexpected_error", state=machine.state.value)
                raise

            silent = isinstance(error, UserRejected)
            if silent:
                logger.info("redemption.cancelled_by_user")
            else:
                logger.warning(
                    "redemption.failed",
                    kind=error.kind.value,
                    error=str(error),
                    retryable=error.retryable,
                )
            return RedemptionOutcome(
                state=machine.state,
                trace_id=trace_id,
                tx_hash=tx_hash,
                error=error,
                silent=silent,
                history=tuple(machine.history),
            )

        finally:
            clear_claim_context()

    # ── Helpers ──────────────────────────────────────────────────

    async def _fire(
        self,
        machine: RedemptionStateMachine,
        event: RedemptionEvent,
        trace_id: str,
        **details: Any,
    ) -> None:
        source = machine.state
        target = machine.fire(event)
        logger.debug("redemption.transition", source=source.value, target=target.value)
        if self._bus is not None:
            await self._bus.publish(
                Topic.REDEMPTION,
                {"source": source.value, "event": event.value, "target": target.value, **details},
                trace_id=trace_id,
            )

    async def _claim_history(self, recipient: Recipient) -> list[ClaimRecord]:
        if not recipient.profile_id:
            return []
        try:
            return await self._cache.claims_for_profile(recipient.profile_id)
        except Exception as exc:
            # Advisory data only; the chain check below still runs.
            logger.warning("redemption.cache_unavailable", error=str(exc))
            return []

    def _card_id(self, receipt: dict[str, Any], recipient: Recipient) -> int | None:
        events = self._contract.decode_card_issued(receipt)
        for event in events:
            if recipient.profile_id is None or event["args"].get("profileId") == recipient.profile_id:
                return int(event["args"]["cardId"])
        logger.warning("redemption.card_issued_missing", events=len(events))
        return None

    async def _record_claim(self, record: ClaimRecord, trace_id: str) -> None:
        """Mirror the confirmed mint into the cache, then tell bus subscribers.

        The syncer applies it directly so the cache is updated before
        ``redeem()`` returns; a failure there is queued by the syncer.
        """
        payload = {
            "profile_id": record.profile_id,
            "template_id": record.template_id,
            "card_id": record.card_id,
            "claim_type": record.claim_type.value,
            "tx_hash": record.tx_hash,
        }
        if self._bus is not None:
            event = await self._bus.publish(Topic.CARD_CLAIMED, payload, trace_id=trace_id)
        else:
            event = Event(topic=Topic.CARD_CLAIMED.value, payload=payload, trace_id=trace_id)
        await self._syncer.apply_event(event)
