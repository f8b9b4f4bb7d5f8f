"""Shared fixtures: well-known dev keys, grants and templates."""

from __future__ import annotations

from typing import Callable

import pytest
from eth_account import Account

from config.settings import Settings
from core.logger import setup_logging
from models.claim import ClaimGrant, SignedGrant
from models.template import Template
from web3_infra.eip712_signer import _sign_claim_sync, build_claim_typed_data

# Hardhat / anvil default accounts #0 and #1, public test keys
ISSUER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
CLAIMANT_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"

CHAIN_ID = 1287
CONTRACT = "0x5fbdb2315678afecb367f032d93f642f64180aa3"


@pytest.fixture(autouse=True, scope="session")
def _structured_logging() -> None:
    """Route structlog through stdlib to stderr so stdout stays machine-readable."""
    setup_logging(Settings(APP_ENV="prod", LOG_LEVEL="INFO"))


@pytest.fixture
def issuer_key() -> str:
    return ISSUER_KEY


@pytest.fixture
def issuer_address() -> str:
    return Account.from_key(ISSUER_KEY).address


@pytest.fixture
def claimant_key() -> str:
    return CLAIMANT_KEY


@pytest.fixture
def claimant_address() -> str:
    return Account.from_key(CLAIMANT_KEY).address


@pytest.fixture
def chain_id() -> int:
    return CHAIN_ID


@pytest.fixture
def contract_address() -> str:
    return CONTRACT


@pytest.fixture
def grant(claimant_address: str) -> ClaimGrant:
    return ClaimGrant(
        user=claimant_address,
        profile_owner=claimant_address,
        template_id=7,
        nonce=1_718_000_000_000_123_456,
        token_uri="ipfs://QmTest123/card 7.json",
    )


@pytest.fixture
def sign() -> Callable[..., SignedGrant]:
    """Synchronous signer for building fixtures (no process pool)."""

    def _sign(
        grant: ClaimGrant,
        key: str = ISSUER_KEY,
        chain_id: int = CHAIN_ID,
        contract: str = CONTRACT,
    ) -> SignedGrant:
        typed = build_claim_typed_data(grant, chain_id, contract)
        return SignedGrant(grant=grant, signature=_sign_claim_sync(typed, key))

    return _sign


@pytest.fixture
def signed_grant(grant: ClaimGrant, sign: Callable[..., SignedGrant]) -> SignedGrant:
    return sign(grant)


@pytest.fixture
def template(issuer_address: str) -> Template:
    return Template(
        template_id=7,
        issuer=issuer_address,
        max_supply=0,
        current_supply=5,
        tier=1,
        start_time=0,
        end_time=0,
        is_paused=False,
    )
