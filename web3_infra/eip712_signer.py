"""ClaimSigner — EIP-712 signing and recovery of ReputationCard claim grants.

Domain ``{name: "ReputationCard", version: "1", chainId, verifyingContract}``
and primary type::

    Claim(address user, address profileOwner, uint256 templateId,
          uint256 nonce, string tokenURI)

Local keys sign inside a ``ProcessPoolExecutor`` (secp256k1 is CPU-bound
and must not block the event loop).  A remote wallet session can be used
instead; its calls go through the ``ResilientFetcher``.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ProcessPoolExecutor
from typing import Any, Awaitable, Callable

import structlog
from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from eth_utils import keccak, to_checksum_address

from core.errors import SignerMismatch
from models.claim import ClaimGrant, SignedGrant
from web3_infra.retry import ResilientFetcher

logger = structlog.get_logger("web3_infra.eip712_signer")

DOMAIN_NAME = "ReputationCard"
DOMAIN_VERSION = "1"

CLAIM_TYPES: dict[str, list[dict[str, str]]] = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Claim": [
        {"name": "user", "type": "address"},
        {"name": "profileOwner", "type": "address"},
        {"name": "templateId", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "tokenURI", "type": "string"},
    ],
}

# A wallet session: receives the full typed-data message, returns a signature.
SigningSession = Callable[[dict[str, Any]], Awaitable["str | bytes"]]


# ── Typed data ──────────────────────────────────────────────────────


def build_domain(chain_id: int, verifying_contract: str) -> dict[str, Any]:
    return {
        "name": DOMAIN_NAME,
        "version": DOMAIN_VERSION,
        "chainId": chain_id,
        "verifyingContract": to_checksum_address(verifying_contract),
    }


def build_claim_typed_data(
    grant: ClaimGrant,
    chain_id: int,
    verifying_contract: str,
) -> dict[str, Any]:
    """Full ``eth_signTypedData_v4`` payload for *grant*."""
    return {
        "types": CLAIM_TYPES,
        "primaryType": "Claim",
        "domain": build_domain(chain_id, verifying_contract),
        "message": {
            "user": grant.user,
            "profileOwner": grant.profile_owner,
            "templateId": grant.template_id,
            "nonce": grant.nonce,
            "tokenURI": grant.token_uri,
        },
    }


def claim_signable(grant: ClaimGrant, chain_id: int, verifying_contract: str) -> SignableMessage:
    return encode_typed_data(
        full_message=build_claim_typed_data(grant, chain_id, verifying_contract)
    )


def claim_digest(grant: ClaimGrant, chain_id: int, verifying_contract: str) -> bytes:
    """32-byte EIP-712 digest ``keccak(0x19 || 0x01 || domainSeparator || structHash)``."""
    signable = claim_signable(grant, chain_id, verifying_contract)
    return keccak(b"\x19" + signable.version + signable.header + signable.body)


def recover_claim_signer(
    signed: SignedGrant,
    chain_id: int,
    verifying_contract: str,
) -> str:
    """Checksummed address that produced ``signed.signature``.

    Raises
    ------
    SignerMismatch
        If no address can be recovered from the signature.
    """
    signable = claim_signable(signed.grant, chain_id, verifying_contract)
    try:
        recovered = Account.recover_message(signable, signature=signed.signature)
    except Exception as exc:
        raise SignerMismatch(f"Unrecoverable signature: {exc}") from exc
    return to_checksum_address(recovered)


# ── Module-level signing function (must be picklable for multiprocessing) ──


def _sign_claim_sync(typed_data: dict[str, Any], private_key: str) -> str:
    """Sign *typed_data* in a worker process; returns ``0x``-prefixed hex."""
    signable = encode_typed_data(full_message=typed_data)
    signed = Account.sign_message(signable, private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


# ── Async signer class ──────────────────────────────────────────────


class ClaimSigner:
    """Issuer-side signer of claim grants.

    Parameters
    ----------
    chain_id:
        Chain id of the EIP-712 domain.
    verifying_contract:
        ReputationCard contract address.
    private_key:
        Issuer key for local signing.  Mutually exclusive with *session*.
    session:
        Remote wallet session used instead of a local key.
    fetcher:
        Retry wrapper around *session* calls.
    max_workers:
        Processes in the local signing pool.
    """

    def __init__(
        self,
        chain_id: int,
        verifying_contract: str,
        private_key: str | None = None,
        session: SigningSession | None = None,
        fetcher: ResilientFetcher | None = None,
        max_workers: int = 2,
    ) -> None:
        if (private_key is None) == (session is None):
            raise ValueError("Exactly one of private_key or session is required")

        self._chain_id = chain_id
        self._verifying_contract = to_checksum_address(verifying_contract)
        self._private_key = private_key
        self._session = session
        self._fetcher = fetcher or ResilientFetcher()
        self._max_workers = max_workers
        self._pool: ProcessPoolExecutor | None = None
        self._address = Account.from_key(private_key).address if private_key else None

    @property
    def address(self) -> str | None:
        """Issuer address for local keys, ``None`` for a remote session."""
        return self._address

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        """Start the process pool.  Idempotent; no-op for a remote session."""
        if self._private_key is None or self._pool is not None:
            return
        self._pool = ProcessPoolExecutor(max_workers=self._max_workers)
        logger.info(
            "eip712_signer.started",
            max_workers=self._max_workers,
            issuer=self._address,
        )

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
            logger.info("eip712_signer.shutdown")

    # ── Signing ──────────────────────────────────────────────────

    async def sign_grant(self, grant: ClaimGrant) -> SignedGrant:
        """Sign *grant* under the claim domain.

        Raises
        ------
        RuntimeError
            If a local signer has not been started.
        UserRejected
            If the remote session declined.
        NetworkError
            If the remote session stayed unreachable across retries.
        """
        typed_data = build_claim_typed_data(grant, self._chain_id, self._verifying_contract)

        if self._session is not None:
            session = self._session
            raw = await self._fetcher.run(lambda: session(typed_data), op="sign_grant")
            signature: str | bytes = raw
        else:
            if self._pool is None:
                raise RuntimeError("ClaimSigner not started — call start() first")
            loop = asyncio.get_running_loop()
            signature = await loop.run_in_executor(
                self._pool, _sign_claim_sync, typed_data, self._private_key
            )

        signed = SignedGrant(grant=grant, signature=signature)
        logger.debug(
            "eip712_signer.signed",
            template_id=grant.template_id,
            nonce=grant.nonce,
            user=grant.user,
        )
        return signed

    # ── Context manager ──────────────────────────────────────────

    async def __aenter__(self) -> ClaimSigner:
        self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.shutdown(wait=True)
