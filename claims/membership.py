"""Membership resolution for non-OPEN templates.

Answers rule 6 of the eligibility evaluator from chain reads:

- WHITELIST:        ``isWhitelisted(templateId, account)``
- TOKEN_HOLDER:     ``balanceOf(account) >= requirements["min_balance"]``
                    (default 1) on ``requirements["token_address"]``
- PROFILE_REQUIRED: recipient has a profile and, if
                    ``requirements["min_reputation_score"]`` is set, its
                    ``profileIdToScore`` reaches it

``None`` means the answer is unknown (bad requirements); the evaluator
treats it as a failure.
"""

from __future__ import annotations

import structlog

from models.claim import Recipient
from models.template import EligibilityType, Template
from web3_infra.reputation_card import ReputationCardClient

logger = structlog.get_logger("claims.membership")


class MembershipResolver:
    def __init__(self, contract: ReputationCardClient) -> None:
        self._contract = contract

    async def resolve(self, template: Template, recipient: Recipient) -> bool | None:
        """Membership of *recipient* for *template*; ``True`` for OPEN templates."""
        kind = template.eligibility_type
        if kind == EligibilityType.OPEN:
            return True
        if kind == EligibilityType.WHITELIST:
            return await self._contract.is_whitelisted(template.template_id, recipient.address)
        if kind == EligibilityType.TOKEN_HOLDER:
            return await self._token_holder(template, recipient)
        return await self._profile_required(template, recipient)

    async def _token_holder(self, template: Template, recipient: Recipient) -> bool | None:
        token = template.requirements.get("token_address")
        min_balance = _uint(template, "min_balance", default=1)
        if not token or min_balance is None:
            logger.warning(
                "membership.bad_requirements",
                template_id=template.template_id,
                requirements=template.requirements,
            )
            return None
        balance = await self._contract.token_balance(token, recipient.address)
        return balance >= min_balance

    async def _profile_required(self, template: Template, recipient: Recipient) -> bool | None:
        if not recipient.has_profile:
            return False
        min_score = _uint(template, "min_reputation_score", default=0)
        if min_score is None:
            logger.warning(
                "membership.bad_requirements",
                template_id=template.template_id,
                requirements=template.requirements,
            )
            return None
        if min_score == 0:
            return True
        assert recipient.profile_id is not None
        score = await self._contract.reputation_score(recipient.profile_id)
        return score >= min_score


def _uint(template: Template, key: str, default: int) -> int | None:
    raw = template.requirements.get(key)
    if raw is None or raw == "":
        return default
    if not (raw.isascii() and raw.isdigit()):
        return None
    return int(raw)
