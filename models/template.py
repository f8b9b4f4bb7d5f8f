"""Template — mirrored state of a ReputationCard card template."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Sequence

from pydantic import BaseModel, Field

from config.settings import ZERO_ADDRESS


class EligibilityType(str, Enum):
    """Who may claim from a template.  Ordinal values match the contract enum."""

    OPEN = "OPEN"
    WHITELIST = "WHITELIST"
    TOKEN_HOLDER = "TOKEN_HOLDER"
    PROFILE_REQUIRED = "PROFILE_REQUIRED"

    @classmethod
    def from_chain(cls, value: int) -> EligibilityType:
        members = list(cls)
        if not 0 <= value < len(members):
            raise ValueError(f"Unknown eligibility type ordinal: {value}")
        return members[value]


class Template(BaseModel):
    """Card template as exposed by ``templates(templateId)``.

    ``max_supply``, ``start_time`` and ``end_time`` use 0 as "no bound".
    ``eligibility_type`` and ``requirements`` are off-chain metadata kept
    next to the chain fields in the cache.
    """

    template_id: int = Field(..., ge=0)
    issuer: str = ZERO_ADDRESS
    max_supply: int = Field(default=0, ge=0)
    current_supply: int = Field(default=0, ge=0)
    tier: int = Field(default=0, ge=0)
    start_time: int = Field(default=0, ge=0)
    end_time: int = Field(default=0, ge=0)
    is_paused: bool = False

    eligibility_type: EligibilityType = EligibilityType.OPEN
    requirements: dict[str, str] = Field(default_factory=dict)

    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def exists(self) -> bool:
        """A template exists iff its issuer is not the zero address."""
        return self.issuer.lower() != ZERO_ADDRESS

    @property
    def remaining_supply(self) -> int | None:
        """Cards left to mint, ``None`` when the supply is unlimited."""
        if self.max_supply == 0:
            return None
        return max(self.max_supply - self.current_supply, 0)

    @classmethod
    def from_chain(cls, template_id: int, raw: Sequence[Any], **extra: Any) -> Template:
        """Build from the ``templates(id)`` tuple
        ``(issuer, maxSupply, currentSupply, tier, startTime, endTime, isPaused)``.
        """
        issuer, max_supply, current_supply, tier, start_time, end_time, is_paused = raw[:7]
        return cls(
            template_id=template_id,
            issuer=str(issuer),
            max_supply=int(max_supply),
            current_supply=int(current_supply),
            tier=int(tier),
            start_time=int(start_time),
            end_time=int(end_time),
            is_paused=bool(is_paused),
            **extra,
        )
