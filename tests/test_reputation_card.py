"""Tests for web3_infra/reputation_card.py — fake web3, no network."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_utils import keccak
from web3.exceptions import ContractLogicError

from core.errors import ChainRevert, NetworkError
from models.claim import ClaimType, SignedGrant
from web3_infra.reputation_card import (
    CLAIM_WITH_SIGNATURE_SELECTOR,
    LocalTransactionSigner,
    ReputationCardClient,
    ReputationCardConfig,
)
from web3_infra.retry import ResilientFetcher, RetryPolicy

ISSUER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
PROFILE_NFT = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


async def _no_sleep(delay: float) -> None:
    return None


class FakeRPC:
    """Stands in for RPCManager with a single MagicMock web3."""

    def __init__(self) -> None:
        self.w3 = MagicMock()
        self.executed = 0

    async def execute(self, fn: Any) -> Any:
        self.executed += 1
        return await fn(self.w3)

    def get_web3(self) -> MagicMock:
        return self.w3


def _resolved(value: Any) -> asyncio.Future:
    fut = asyncio.get_running_loop().create_future()
    fut.set_result(value)
    return fut


@pytest.fixture
def rpc() -> FakeRPC:
    return FakeRPC()


@pytest.fixture
def client(rpc: FakeRPC) -> ReputationCardClient:
    fetcher = ResilientFetcher(RetryPolicy(max_retries=2, jitter_ratio=0), sleep=_no_sleep)
    config = ReputationCardConfig(
        reputation_card_address=CONTRACT,
        profile_nft_address=PROFILE_NFT,
        chain_id=1287,
        gas_limit_claim=400_000,
        gas_price_multiplier=1.5,
    )
    return ReputationCardClient(rpc, fetcher, config)


def _contract_fn(rpc: FakeRPC, name: str) -> MagicMock:
    return getattr(rpc.w3.eth.contract.return_value.functions, name).return_value


class TestReads:
    @pytest.mark.asyncio
    async def test_get_template(self, client: ReputationCardClient, rpc: FakeRPC) -> None:
        _contract_fn(rpc, "templates").call = AsyncMock(
            return_value=(ISSUER, 100, 4, 2, 0, 0, False)
        )
        template = await client.get_template(7)
        assert template.template_id == 7
        assert template.issuer == ISSUER
        assert template.current_supply == 4
        assert template.exists

    @pytest.mark.asyncio
    async def test_read_retried_on_transient_error(
        self, client: ReputationCardClient, rpc: FakeRPC
    ) -> None:
        _contract_fn(rpc, "hasProfileClaimed").call = AsyncMock(
            side_effect=[TimeoutError(), True]
        )
        assert await client.has_profile_claimed(7, 11) is True
        assert rpc.executed == 2

    @pytest.mark.asyncio
    async def test_profile_id_zero_means_none(
        self, client: ReputationCardClient, rpc: FakeRPC
    ) -> None:
        _contract_fn(rpc, "addressToProfileId").call = AsyncMock(return_value=0)
        assert await client.profile_id_of(ISSUER.lower()) == 0

    @pytest.mark.asyncio
    async def test_get_events_rejects_unknown(self, client: ReputationCardClient) -> None:
        with pytest.raises(ValueError):
            await client.get_events("Transfer", 0, 10)

    @pytest.mark.asyncio
    async def test_get_events_flattens_logs(
        self, client: ReputationCardClient, rpc: FakeRPC
    ) -> None:
        log = {
            "event": "RoleGranted",
            "args": {"role": b"\x01" * 32, "account": ISSUER, "sender": ISSUER},
            "blockNumber": 12,
            "transactionHash": b"\xaa" * 32,
            "logIndex": 3,
        }
        event = rpc.w3.eth.contract.return_value.events.RoleGranted.return_value
        event.get_logs = AsyncMock(return_value=[log])

        (flat,) = await client.get_events("RoleGranted", 10, 20)
        event.get_logs.assert_awaited_once_with(from_block=10, to_block=20)
        assert flat == {
            "event": "RoleGranted",
            "args": {"role": "0x" + "01" * 32, "account": ISSUER, "sender": ISSUER},
            "block_number": 12,
            "tx_hash": "0x" + "aa" * 32,
            "log_index": 3,
        }


class TestClaimType:
    @pytest.mark.asyncio
    async def test_signature_selector(self, client: ReputationCardClient, rpc: FakeRPC) -> None:
        rpc.w3.eth.get_transaction = AsyncMock(
            return_value={"input": CLAIM_WITH_SIGNATURE_SELECTOR + b"\x00" * 64}
        )
        assert await client.classify_claim_type("0x01") == ClaimType.SIGNATURE

    @pytest.mark.asyncio
    async def test_other_selector_is_direct(self, client: ReputationCardClient, rpc: FakeRPC) -> None:
        rpc.w3.eth.get_transaction = AsyncMock(return_value={"input": "0xdeadbeef" + "00" * 32})
        assert await client.classify_claim_type("0x01") == ClaimType.DIRECT


class TestClaimTransaction:
    @pytest.mark.asyncio
    async def test_build_simulates_then_builds(
        self, client: ReputationCardClient, rpc: FakeRPC, signed_grant: SignedGrant
    ) -> None:
        fn = _contract_fn(rpc, "claimWithSignature")
        fn.call = AsyncMock(return_value=301)
        fn.build_transaction = AsyncMock(side_effect=lambda params: {**params, "data": "0x"})
        rpc.w3.eth.get_transaction_count = AsyncMock(return_value=5)
        rpc.w3.eth.gas_price = _resolved(1_000)

        tx = await client.build_claim_transaction(signed_grant, sender=ISSUER.lower())

        fn.call.assert_awaited_once_with({"from": ISSUER})
        rpc.w3.eth.get_transaction_count.assert_awaited_once_with(ISSUER, "pending")
        assert tx["nonce"] == 5
        assert tx["gas"] == 400_000
        assert tx["gasPrice"] == 1_500
        assert tx["chainId"] == 1287

        args = rpc.w3.eth.contract.return_value.functions.claimWithSignature.call_args.args
        assert args[2] == signed_grant.grant.template_id
        assert args[5] == bytes.fromhex(signed_grant.signature[2:])

    @pytest.mark.asyncio
    async def test_simulation_revert_stops_build(
        self, client: ReputationCardClient, rpc: FakeRPC, signed_grant: SignedGrant
    ) -> None:
        fn = _contract_fn(rpc, "claimWithSignature")
        fn.call = AsyncMock(side_effect=ContractLogicError("execution reverted: Already claimed"))
        fn.build_transaction = AsyncMock()

        with pytest.raises(ChainRevert) as exc_info:
            await client.build_claim_transaction(signed_grant, sender=ISSUER)
        assert exc_info.value.reason == "Already claimed"
        fn.build_transaction.assert_not_awaited()
        assert rpc.executed == 1


class TestBroadcast:
    RAW = b"\x02signed-tx"

    @pytest.mark.asyncio
    async def test_hash_computed_locally(self, client: ReputationCardClient, rpc: FakeRPC) -> None:
        rpc.w3.eth.send_raw_transaction = AsyncMock(return_value=b"\x00" * 32)
        assert await client.broadcast(self.RAW) == "0x" + keccak(self.RAW).hex()

    @pytest.mark.asyncio
    async def test_uncertain_send_returns_hash_without_resend(
        self, client: ReputationCardClient, rpc: FakeRPC
    ) -> None:
        rpc.w3.eth.send_raw_transaction = AsyncMock(side_effect=TimeoutError())
        assert await client.broadcast(self.RAW) == "0x" + keccak(self.RAW).hex()
        rpc.w3.eth.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_terminal_send_error(self, client: ReputationCardClient, rpc: FakeRPC) -> None:
        rpc.w3.eth.send_raw_transaction = AsyncMock(
            side_effect=ValueError("execution reverted: Nonce used")
        )
        with pytest.raises(ChainRevert):
            await client.broadcast(self.RAW)
        rpc.w3.eth.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejected_send_raises_instead_of_awaiting(
        self, client: ReputationCardClient, rpc: FakeRPC
    ) -> None:
        rpc.w3.eth.send_raw_transaction = AsyncMock(
            side_effect=ValueError({"code": -32000, "message": "nonce too low"})
        )
        with pytest.raises(ChainRevert) as exc_info:
            await client.broadcast(self.RAW)
        assert exc_info.value.reason == "nonce too low"
        rpc.w3.eth.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_send_error_propagates(
        self, client: ReputationCardClient, rpc: FakeRPC
    ) -> None:
        rpc.w3.eth.send_raw_transaction = AsyncMock(side_effect=KeyError("codec"))
        with pytest.raises(KeyError):
            await client.broadcast(self.RAW)


class TestReceipt:
    @pytest.mark.asyncio
    async def test_success(self, client: ReputationCardClient, rpc: FakeRPC) -> None:
        rpc.w3.eth.wait_for_transaction_receipt = AsyncMock(
            return_value={"status": 1, "blockNumber": 9, "gasUsed": 21_000}
        )
        receipt = await client.wait_for_receipt("0xabc")
        assert receipt["blockNumber"] == 9

    @pytest.mark.asyncio
    async def test_status_zero_is_revert(self, client: ReputationCardClient, rpc: FakeRPC) -> None:
        rpc.w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": 0})
        with pytest.raises(ChainRevert) as exc_info:
            await client.wait_for_receipt("0xabc")
        assert exc_info.value.tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_missing_receipt_exhausts_retries(
        self, client: ReputationCardClient, rpc: FakeRPC
    ) -> None:
        rpc.w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=TimeoutError())
        with pytest.raises(NetworkError):
            await client.wait_for_receipt("0xabc")
        assert rpc.w3.eth.wait_for_transaction_receipt.await_count == 3


class TestLocalTransactionSigner:
    @pytest.mark.asyncio
    async def test_signs_legacy_transaction(self, claimant_key: str, claimant_address: str) -> None:
        signer = LocalTransactionSigner(claimant_key)
        assert signer.address == claimant_address
        raw = await signer.sign_transaction(
            {
                "to": CONTRACT,
                "value": 0,
                "gas": 21_000,
                "gasPrice": 1_000_000_000,
                "nonce": 0,
                "chainId": 1287,
                "data": "0x",
            }
        )
        assert isinstance(raw, bytes)
        assert len(raw) > 65
