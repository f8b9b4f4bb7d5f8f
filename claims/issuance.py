"""Issuer side: build, sign and encode claim links."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable

import structlog

from claims.link_codec import encode_claim_link
from models.claim import ClaimGrant, SignedGrant
from web3_infra.eip712_signer import ClaimSigner

logger = structlog.get_logger("claims.issuance")

_NONCE_SPREAD = 1_000_000


@dataclass(frozen=True)
class IssuedClaimLink:
    signed: SignedGrant
    url: str


class ClaimLinkIssuer:
    """Signs grants with a ``ClaimSigner`` and turns them into links.

    Nonces are ``unix_ms * 1_000_000 + random(0..999_999)``: unique in
    practice, with no ledger of issued nonces.  Replay of a redeemed grant
    is stopped by the contract's per-profile claim check.
    """

    def __init__(
        self,
        signer: ClaimSigner,
        base_url: str,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self._signer = signer
        self._base_url = base_url
        self._clock = clock
        self._rng = rng or random.SystemRandom()

    def new_nonce(self) -> int:
        millis = int(self._clock() * 1000)
        return millis * _NONCE_SPREAD + self._rng.randrange(_NONCE_SPREAD)

    async def issue(
        self,
        user: str,
        template_id: int,
        token_uri: str,
        profile_owner: str | None = None,
        nonce: int | None = None,
    ) -> IssuedClaimLink:
        """Sign a grant for *user* and return it with its link.

        ``profile_owner`` defaults to *user*.
        """
        grant = ClaimGrant(
            user=user,
            profile_owner=profile_owner or user,
            template_id=template_id,
            nonce=self.new_nonce() if nonce is None else nonce,
            token_uri=token_uri,
        )
        signed = await self._signer.sign_grant(grant)
        url = encode_claim_link(self._base_url, signed)
        logger.info(
            "issuance.link_issued",
            template_id=template_id,
            user=grant.user,
            nonce=grant.nonce,
        )
        return IssuedClaimLink(signed=signed, url=url)
