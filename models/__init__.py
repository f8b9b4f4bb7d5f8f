"""Reputation card claims — models package."""

from .claim import ClaimGrant, ClaimRecord, ClaimType, Recipient, SignedGrant
from .template import EligibilityType, Template

__all__ = [
    "ClaimGrant",
    "ClaimRecord",
    "ClaimType",
    "EligibilityType",
    "Recipient",
    "SignedGrant",
    "Template",
]
