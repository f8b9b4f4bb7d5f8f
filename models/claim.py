"""Claim grant, signed grant and claim record models."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from eth_utils import is_address, to_checksum_address
from pydantic import BaseModel, ConfigDict, Field, field_validator

UINT256_MAX = 2**256 - 1

_SIGNATURE_RE = re.compile(r"^0x[0-9a-fA-F]{130}$")


def _checksum(value: str) -> str:
    if not isinstance(value, str) or not is_address(value):
        raise ValueError(f"invalid address: {value!r}")
    return to_checksum_address(value)


class ClaimGrant(BaseModel):
    """Issuer's authorization for ``user`` to mint one card from a template."""

    model_config = ConfigDict(frozen=True)

    user: str
    profile_owner: str
    template_id: int = Field(..., ge=0, le=UINT256_MAX)
    nonce: int = Field(..., ge=0, le=UINT256_MAX)
    token_uri: str = Field(..., min_length=1)

    @field_validator("user", "profile_owner", mode="before")
    @classmethod
    def normalise_address(cls, v: str) -> str:
        return _checksum(v)


class SignedGrant(BaseModel):
    """A ClaimGrant with the issuer's 65-byte EIP-712 signature."""

    model_config = ConfigDict(frozen=True)

    grant: ClaimGrant
    signature: str

    @field_validator("signature", mode="before")
    @classmethod
    def normalise_signature(cls, v: str | bytes) -> str:
        if isinstance(v, (bytes, bytearray)):
            v = "0x" + bytes(v).hex()
        if not isinstance(v, str):
            raise ValueError("signature must be a hex string")
        if not v.startswith(("0x", "0X")):
            v = "0x" + v
        v = "0x" + v[2:]
        if not _SIGNATURE_RE.match(v):
            raise ValueError("signature must be 65 bytes of hex")
        return v.lower()


class ClaimType(str, Enum):
    """How a card was minted."""

    DIRECT = "direct"
    SIGNATURE = "signature"


class ClaimRecord(BaseModel):
    """One successful mint.  At most one per (profile_id, template_id)."""

    profile_id: int = Field(..., ge=0)
    template_id: int = Field(..., ge=0)
    card_id: int = Field(..., ge=0)
    claim_type: ClaimType = ClaimType.SIGNATURE
    claimed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tx_hash: Optional[str] = None


class Recipient(BaseModel):
    """Wallet redeeming a grant and its resolved profile (``None`` = no profile)."""

    address: str
    profile_id: Optional[int] = Field(default=None, ge=0)

    @field_validator("address", mode="before")
    @classmethod
    def normalise_address(cls, v: str) -> str:
        return _checksum(v)

    @property
    def has_profile(self) -> bool:
        return bool(self.profile_id)
