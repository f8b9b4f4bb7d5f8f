"""ReputationCardClient — consumed surface of the ReputationCard contracts.

Reads (templates, claim history, whitelist, profile, balances, logs) go
through ``ResilientFetcher`` → ``RPCManager.execute`` so transient failures
are retried and fail over across endpoints.

Writes follow one rule: a signed claim transaction is broadcast exactly
once, to a single endpoint.  Its hash is computed locally from the raw
bytes, so an uncertain send leaves the caller awaiting that hash, never
re-sending.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import structlog
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector, keccak, to_bytes, to_checksum_address
from web3 import AsyncWeb3
from web3.logs import DISCARD

from config.settings import Settings
from core.errors import ChainRevert, classify_error
from models.claim import ClaimType, SignedGrant
from models.template import Template
from web3_infra.retry import ResilientFetcher
from web3_infra.rpc_manager import RPCManager

logger = structlog.get_logger("web3_infra.reputation_card")

# ── ABI fragments ───────────────────────────────────────────────────

REPUTATION_CARD_ABI: list[dict[str, Any]] = [
    {
        "name": "templates",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "templateId", "type": "uint256"}],
        "outputs": [
            {"name": "issuer", "type": "address"},
            {"name": "maxSupply", "type": "uint256"},
            {"name": "currentSupply", "type": "uint256"},
            {"name": "tier", "type": "uint8"},
            {"name": "startTime", "type": "uint256"},
            {"name": "endTime", "type": "uint256"},
            {"name": "isPaused", "type": "bool"},
        ],
    },
    {
        "name": "hasProfileClaimed",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "templateId", "type": "uint256"},
            {"name": "profileId", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "isWhitelisted",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "templateId", "type": "uint256"},
            {"name": "account", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "claimWithSignature",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "profileOwner", "type": "address"},
            {"name": "templateId", "type": "uint256"},
            {"name": "nonce", "type": "uint256"},
            {"name": "tokenURI", "type": "string"},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "TemplateCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "templateId", "type": "uint256", "indexed": True},
            {"name": "issuer", "type": "address", "indexed": True},
            {"name": "maxSupply", "type": "uint256", "indexed": False},
            {"name": "tier", "type": "uint8", "indexed": False},
        ],
    },
    {
        "name": "CardIssued",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "cardId", "type": "uint256", "indexed": True},
            {"name": "profileId", "type": "uint256", "indexed": True},
            {"name": "issuer", "type": "address", "indexed": True},
            {"name": "templateId", "type": "uint256", "indexed": False},
            {"name": "tier", "type": "uint8", "indexed": False},
        ],
    },
    {
        "name": "RoleGranted",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "role", "type": "bytes32", "indexed": True},
            {"name": "account", "type": "address", "indexed": True},
            {"name": "sender", "type": "address", "indexed": True},
        ],
    },
    {
        "name": "RoleRevoked",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "role", "type": "bytes32", "indexed": True},
            {"name": "account", "type": "address", "indexed": True},
            {"name": "sender", "type": "address", "indexed": True},
        ],
    },
]

PROFILE_NFT_ABI: list[dict[str, Any]] = [
    {
        "name": "addressToProfileId",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "profileIdToScore",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "profileId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

# balanceOf(address) has the same shape on ERC-20 and ERC-721
BALANCE_OF_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

CLAIM_WITH_SIGNATURE_SELECTOR = function_signature_to_4byte_selector(
    "claimWithSignature(address,address,uint256,uint256,string,bytes)"
)

WATCHED_EVENTS = ("TemplateCreated", "CardIssued", "RoleGranted", "RoleRevoked")


# ── Transaction signing ─────────────────────────────────────────────


class TransactionSigner(Protocol):
    """Signs a built transaction for the claimant.

    Implementations backed by a wallet raise ``UserRejected`` (or an error
    classified as such) when the holder declines.
    """

    @property
    def address(self) -> str: ...

    async def sign_transaction(self, tx: dict[str, Any]) -> bytes: ...


class LocalTransactionSigner:
    """``TransactionSigner`` over a raw private key."""

    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        signed = self._account.sign_transaction(tx)
        return bytes(signed.raw_transaction)


# ── Client ──────────────────────────────────────────────────────────


@dataclass
class ReputationCardConfig:
    """Addresses and transaction parameters."""

    reputation_card_address: str
    profile_nft_address: str
    chain_id: int = 1287
    gas_limit_claim: int = 500_000
    gas_price_multiplier: float = 1.2
    tx_confirmation_timeout_s: float = 120.0

    @classmethod
    def from_settings(cls, settings: Settings) -> ReputationCardConfig:
        return cls(
            reputation_card_address=settings.REPUTATION_CARD_ADDRESS,
            profile_nft_address=settings.PROFILE_NFT_ADDRESS,
            chain_id=settings.CHAIN_ID,
            gas_limit_claim=settings.TX_GAS_LIMIT_CLAIM,
            gas_price_multiplier=settings.TX_GAS_PRICE_MULTIPLIER,
            tx_confirmation_timeout_s=settings.TX_CONFIRMATION_TIMEOUT_SECONDS,
        )


class ReputationCardClient:
    """Async client of ReputationCard, ProfileNFT and token balance reads.

    Usage::

        client = ReputationCardClient(rpc, fetcher, ReputationCardConfig.from_settings(settings))
        template = await client.get_template(7)
        tx = await client.build_claim_transaction(signed, sender=claimant.address)
        tx_hash = await client.broadcast(await claimant.sign_transaction(tx))
        receipt = await client.wait_for_receipt(tx_hash)
    """

    def __init__(
        self,
        rpc: RPCManager,
        fetcher: ResilientFetcher,
        config: ReputationCardConfig,
    ) -> None:
        self._rpc = rpc
        self._fetcher = fetcher
        self._config = config
        self._card_address = to_checksum_address(config.reputation_card_address)
        self._profile_address = to_checksum_address(config.profile_nft_address)

    @property
    def config(self) -> ReputationCardConfig:
        return self._config

    @property
    def address(self) -> str:
        return self._card_address

    # ── Reads ────────────────────────────────────────────────────

    async def get_template(self, template_id: int) -> Template:
        """Chain fields of ``templates(template_id)``.

        A non-existent template comes back with the zero issuer.
        """
        raw = await self._call(
            "templates",
            lambda w3: self._card(w3).functions.templates(template_id).call(),
        )
        return Template.from_chain(template_id, raw)

    async def has_profile_claimed(self, template_id: int, profile_id: int) -> bool:
        return bool(await self._call(
            "hasProfileClaimed",
            lambda w3: self._card(w3).functions.hasProfileClaimed(template_id, profile_id).call(),
        ))

    async def is_whitelisted(self, template_id: int, account: str) -> bool:
        account = to_checksum_address(account)
        return bool(await self._call(
            "isWhitelisted",
            lambda w3: self._card(w3).functions.isWhitelisted(template_id, account).call(),
        ))

    async def profile_id_of(self, owner: str) -> int:
        """Profile id owned by *owner*; 0 when it has none."""
        owner = to_checksum_address(owner)
        return int(await self._call(
            "addressToProfileId",
            lambda w3: self._profile(w3).functions.addressToProfileId(owner).call(),
        ))

    async def reputation_score(self, profile_id: int) -> int:
        return int(await self._call(
            "profileIdToScore",
            lambda w3: self._profile(w3).functions.profileIdToScore(profile_id).call(),
        ))

    async def token_balance(self, token_address: str, owner: str) -> int:
        token = to_checksum_address(token_address)
        owner = to_checksum_address(owner)
        return int(await self._call(
            "balanceOf",
            lambda w3: w3.eth.contract(address=token, abi=BALANCE_OF_ABI)
            .functions.balanceOf(owner).call(),
        ))

    async def latest_block(self) -> int:
        async def _block(w3: AsyncWeb3) -> int:
            return await w3.eth.block_number

        return int(await self._call("block_number", _block))

    async def get_events(
        self,
        event_name: str,
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        """Decoded logs of *event_name* in ``[from_block, to_block]``."""
        if event_name not in WATCHED_EVENTS:
            raise ValueError(f"Unknown event: {event_name}")

        async def _logs(w3: AsyncWeb3) -> list[Any]:
            event = getattr(self._card(w3).events, event_name)()
            return await event.get_logs(from_block=from_block, to_block=to_block)

        logs = await self._call(f"get_logs.{event_name}", _logs)
        return [_log_to_dict(log) for log in logs]

    async def classify_claim_type(self, tx_hash: str) -> ClaimType:
        """``signature`` when *tx_hash* called ``claimWithSignature``, else ``direct``."""

        async def _input(w3: AsyncWeb3) -> Any:
            tx = await w3.eth.get_transaction(tx_hash)
            return tx["input"]

        data = await self._call("get_transaction", _input)
        raw = bytes(data) if isinstance(data, (bytes, bytearray)) else to_bytes(hexstr=data)
        if raw[:4] == CLAIM_WITH_SIGNATURE_SELECTOR:
            return ClaimType.SIGNATURE
        return ClaimType.DIRECT

    # ── Claim transaction ────────────────────────────────────────

    async def build_claim_transaction(self, signed: SignedGrant, sender: str) -> dict[str, Any]:
        """Simulate then build an unsigned ``claimWithSignature`` transaction.

        The simulation surfaces contract reverts (already claimed, paused,
        invalid signature...) as ``ChainRevert`` before anything is signed.
        """
        sender = to_checksum_address(sender)
        grant = signed.grant

        async def _build(w3: AsyncWeb3) -> dict[str, Any]:
            fn = self._card(w3).functions.claimWithSignature(
                grant.user,
                grant.profile_owner,
                grant.template_id,
                grant.nonce,
                grant.token_uri,
                to_bytes(hexstr=signed.signature),
            )
            await fn.call({"from": sender})
            return await fn.build_transaction(await self._base_tx_params(w3, sender))

        tx = await self._call("build_claim_transaction", _build)
        logger.debug(
            "reputation_card.claim_tx_built",
            template_id=grant.template_id,
            sender=sender,
            nonce=tx.get("nonce"),
        )
        return tx

    async def broadcast(self, raw_tx: bytes) -> str:
        """Send *raw_tx* once and return its locally computed hash.

        A transient send failure is logged and the hash is still returned:
        the node may have accepted the transaction, so the caller awaits it.

        Raises
        ------
        ClaimError
            Terminal send failures: a revert reported at submission, or the
            node refusing the transaction (nonce too low, underpriced
            replacement, insufficient funds).
        """
        tx_hash = "0x" + keccak(raw_tx).hex()
        try:
            await self._rpc.get_web3().eth.send_raw_transaction(raw_tx)
        except Exception as exc:
            classified = classify_error(exc)
            if classified is None:
                raise
            if not classified.retryable:
                raise classified from exc
            logger.warning(
                "reputation_card.broadcast_uncertain",
                tx_hash=tx_hash,
                error=str(exc)[:200],
            )
            return tx_hash

        logger.info("reputation_card.tx_sent", tx_hash=tx_hash)
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        """Await the receipt of *tx_hash*.

        Raises
        ------
        ChainRevert
            If the transaction was mined with status 0.
        NetworkError
            If no receipt showed up across all retries.
        """
        timeout = self._config.tx_confirmation_timeout_s

        async def _receipt(w3: AsyncWeb3) -> Any:
            return await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)

        receipt = dict(await self._call("wait_for_receipt", _receipt))
        if receipt.get("status", 0) != 1:
            logger.error(
                "reputation_card.tx_reverted",
                tx_hash=tx_hash,
                gas_used=receipt.get("gasUsed", 0),
            )
            raise ChainRevert("transaction reverted on-chain", tx_hash=tx_hash)

        logger.info(
            "reputation_card.tx_confirmed",
            tx_hash=tx_hash,
            block=receipt.get("blockNumber", 0),
            gas_used=receipt.get("gasUsed", 0),
        )
        return receipt

    def decode_card_issued(self, receipt: dict[str, Any]) -> list[dict[str, Any]]:
        """``CardIssued`` events contained in *receipt*."""
        event = self._card(self._rpc.get_web3()).events.CardIssued()
        return [_log_to_dict(log) for log in event.process_receipt(receipt, errors=DISCARD)]

    # ── Helpers ──────────────────────────────────────────────────

    def _card(self, w3: AsyncWeb3) -> Any:
        return w3.eth.contract(address=self._card_address, abi=REPUTATION_CARD_ABI)

    def _profile(self, w3: AsyncWeb3) -> Any:
        return w3.eth.contract(address=self._profile_address, abi=PROFILE_NFT_ABI)

    async def _call(self, op: str, fn: Any) -> Any:
        return await self._fetcher.run(lambda: self._rpc.execute(fn), op=op)

    async def _base_tx_params(self, w3: AsyncWeb3, sender: str) -> dict[str, Any]:
        nonce = await w3.eth.get_transaction_count(sender, "pending")
        gas_price = await w3.eth.gas_price
        return {
            "from": sender,
            "nonce": nonce,
            "gas": self._config.gas_limit_claim,
            "gasPrice": int(gas_price * self._config.gas_price_multiplier),
            "chainId": self._config.chain_id,
        }


def _log_to_dict(log: Any) -> dict[str, Any]:
    """Flatten a web3 ``EventData`` into plain values."""
    tx_hash = log["transactionHash"]
    return {
        "event": log["event"],
        "args": {
            k: ("0x" + bytes(v).hex() if isinstance(v, (bytes, bytearray)) else v)
            for k, v in dict(log["args"]).items()
        },
        "block_number": log["blockNumber"],
        "tx_hash": tx_hash if isinstance(tx_hash, str) else "0x" + bytes(tx_hash).hex(),
        "log_index": log["logIndex"],
    }
