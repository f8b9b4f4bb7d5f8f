"""Eligibility evaluator — advisory pre-check of a claim against a template.

Rules run in a fixed order and the first failing rule decides the result:

1. template exists
2. template not paused
3. inside the claim window (``start_time`` / ``end_time``, 0 = unbounded)
4. supply left (``max_supply`` 0 = unlimited)
5. recipient profile has not claimed this template
6. membership (whitelist / token holder / profile) for non-OPEN templates

The contract re-checks everything at mint time; this only avoids sending
transactions that are bound to revert.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from core.errors import NotEligible
from models.claim import ClaimRecord, Recipient
from models.template import EligibilityType, Template


class IneligibilityReason(str, Enum):
    TEMPLATE_NOT_FOUND = "template_not_found"
    PAUSED = "paused"
    NOT_STARTED = "not_started"
    ENDED = "ended"
    SOLD_OUT = "sold_out"
    ALREADY_CLAIMED = "already_claimed"
    NOT_WHITELISTED = "not_whitelisted"
    INSUFFICIENT_TOKEN_BALANCE = "insufficient_token_balance"
    PROFILE_REQUIRED = "profile_required"


_MESSAGES: dict[IneligibilityReason, str] = {
    IneligibilityReason.TEMPLATE_NOT_FOUND: "This template does not exist.",
    IneligibilityReason.PAUSED: "This template is currently paused.",
    IneligibilityReason.NOT_STARTED: "Claiming for this template has not started yet.",
    IneligibilityReason.ENDED: "The claiming period for this template has ended.",
    IneligibilityReason.SOLD_OUT: "This template has reached its maximum supply.",
    IneligibilityReason.ALREADY_CLAIMED: "You have already claimed this card.",
    IneligibilityReason.NOT_WHITELISTED: "Your address is not on this template's whitelist.",
    IneligibilityReason.INSUFFICIENT_TOKEN_BALANCE:
        "You do not hold enough of the required token to claim this card.",
    IneligibilityReason.PROFILE_REQUIRED:
        "You need a profile that meets this template's requirements.",
}

# Failures caused by template state the contract can change after it was cached.
CHAIN_STATE_REASONS = frozenset({
    IneligibilityReason.PAUSED,
    IneligibilityReason.NOT_STARTED,
    IneligibilityReason.ENDED,
    IneligibilityReason.SOLD_OUT,
})

_MEMBERSHIP_REASONS: dict[EligibilityType, IneligibilityReason] = {
    EligibilityType.WHITELIST: IneligibilityReason.NOT_WHITELISTED,
    EligibilityType.TOKEN_HOLDER: IneligibilityReason.INSUFFICIENT_TOKEN_BALANCE,
    EligibilityType.PROFILE_REQUIRED: IneligibilityReason.PROFILE_REQUIRED,
}


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: IneligibilityReason | None = None
    message: str | None = None

    @classmethod
    def ok(cls) -> EligibilityResult:
        return cls(eligible=True)

    @classmethod
    def fail(cls, reason: IneligibilityReason) -> EligibilityResult:
        return cls(eligible=False, reason=reason, message=_MESSAGES[reason])

    def raise_for_status(self) -> None:
        """Raise ``NotEligible`` when the result is negative."""
        if not self.eligible:
            assert self.reason is not None
            raise NotEligible(self.reason.value, self.message)


def check_template_state(template: Template, *, now: int) -> EligibilityResult:
    """Rules 1 to 4: existence, pause, claim window and supply.

    They depend on the template alone, so callers can run them before any
    recipient lookup.
    """
    if not template.exists:
        return EligibilityResult.fail(IneligibilityReason.TEMPLATE_NOT_FOUND)

    if template.is_paused:
        return EligibilityResult.fail(IneligibilityReason.PAUSED)

    if template.start_time != 0 and now < template.start_time:
        return EligibilityResult.fail(IneligibilityReason.NOT_STARTED)
    if template.end_time != 0 and now > template.end_time:
        return EligibilityResult.fail(IneligibilityReason.ENDED)

    if template.max_supply != 0 and template.current_supply >= template.max_supply:
        return EligibilityResult.fail(IneligibilityReason.SOLD_OUT)

    return EligibilityResult.ok()


def evaluate_eligibility(
    template: Template,
    claim_history: Iterable[ClaimRecord],
    recipient: Recipient,
    *,
    now: int,
    membership: bool | None = None,
) -> EligibilityResult:
    """Check *recipient* against *template*.

    Parameters
    ----------
    template:
        Cached template state.
    claim_history:
        Known claims; only records of ``recipient.profile_id`` for this
        template matter.
    recipient:
        Claimant address and resolved profile id.
    now:
        Current unix time in seconds.
    membership:
        Outcome of the membership check for non-OPEN templates, resolved
        beforehand.  ``None`` (unknown) fails like ``False``.
    """
    state = check_template_state(template, now=now)
    if not state.eligible:
        return state

    if recipient.profile_id is not None and any(
        r.profile_id == recipient.profile_id and r.template_id == template.template_id
        for r in claim_history
    ):
        return EligibilityResult.fail(IneligibilityReason.ALREADY_CLAIMED)

    if template.eligibility_type != EligibilityType.OPEN and membership is not True:
        return EligibilityResult.fail(_MEMBERSHIP_REASONS[template.eligibility_type])

    return EligibilityResult.ok()
