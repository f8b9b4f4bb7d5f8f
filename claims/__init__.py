"""Reputation card claims — claim link, eligibility and redemption."""

from .eligibility import (
    EligibilityResult,
    IneligibilityReason,
    check_template_state,
    evaluate_eligibility,
)
from .issuance import ClaimLinkIssuer, IssuedClaimLink
from .link_codec import decode_claim_link, encode_claim_link
from .membership import MembershipResolver
from .redemption import (
    RedemptionFlow,
    RedemptionOutcome,
    RedemptionState,
    RedemptionStateMachine,
)
from .verifier import RedemptionVerifier

__all__ = [
    "ClaimLinkIssuer",
    "EligibilityResult",
    "IneligibilityReason",
    "IssuedClaimLink",
    "MembershipResolver",
    "RedemptionFlow",
    "RedemptionOutcome",
    "RedemptionState",
    "RedemptionStateMachine",
    "RedemptionVerifier",
    "check_template_state",
    "decode_claim_link",
    "encode_claim_link",
    "evaluate_eligibility",
]
