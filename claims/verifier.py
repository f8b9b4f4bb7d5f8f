"""Redemption verifier — the signer of a grant must be the template issuer."""

from __future__ import annotations

import structlog

from core.errors import SignerMismatch
from models.claim import SignedGrant
from models.template import Template
from web3_infra.eip712_signer import recover_claim_signer

logger = structlog.get_logger("claims.verifier")


class RedemptionVerifier:
    """Recompute the EIP-712 digest of a SignedGrant and check its signer.

    Uses the same domain as ``ClaimSigner``; a grant signed for another
    chain or contract recovers to a different address and is rejected.
    """

    def __init__(self, chain_id: int, verifying_contract: str) -> None:
        self._chain_id = chain_id
        self._verifying_contract = verifying_contract

    def recover_signer(self, signed: SignedGrant) -> str:
        return recover_claim_signer(signed, self._chain_id, self._verifying_contract)

    def verify(self, signed: SignedGrant, template: Template) -> str:
        """Return the recovered issuer address.

        Raises
        ------
        SignerMismatch
            If the grant targets another template, the signature does not
            recover, or the recovered address is not ``template.issuer``.
        """
        grant = signed.grant
        if grant.template_id != template.template_id:
            raise SignerMismatch(
                f"Grant is for template {grant.template_id}, not {template.template_id}"
            )

        recovered = self.recover_signer(signed)
        if recovered.lower() != template.issuer.lower():
            logger.warning(
                "verifier.signer_mismatch",
                template_id=template.template_id,
                expected=template.issuer,
                recovered=recovered,
            )
            raise SignerMismatch(
                "Claim grant was not signed by the template issuer",
                expected=template.issuer,
                recovered=recovered,
            )
        return recovered
