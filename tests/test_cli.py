"""Tests for cli/claims.py — parser and offline commands."""

from __future__ import annotations

import argparse
import json

import pytest

from claims.link_codec import encode_claim_link
from cli.claims import (
    EXIT_CLAIM_ERROR,
    EXIT_OK,
    EXIT_USAGE,
    build_parser,
    run_command,
)
from config.settings import Settings
from models.claim import SignedGrant

BASE_URL = "https://cards.example.org"


@pytest.fixture
def settings(issuer_key: str, chain_id: int, contract_address: str) -> Settings:
    return Settings(
        CHAIN_ID=chain_id,
        REPUTATION_CARD_ADDRESS=contract_address,
        ISSUER_PRIVATE_KEY=issuer_key,
        CLAIM_BASE_URL=BASE_URL,
        CACHE_DSN="sqlite:///:memory:",
    )


class TestParser:
    def test_issue_link(self) -> None:
        args = build_parser().parse_args(
            ["issue-link", "--user", "0xabc", "--template-id", "7", "--token-uri", "ipfs://x"]
        )
        assert args.command == "issue-link"
        assert args.template_id == 7
        assert args.profile_owner is None
        assert args.nonce is None

    def test_decode_link_verify_flag(self) -> None:
        args = build_parser().parse_args(["decode-link", "https://x/claim?a=1", "--verify"])
        assert args.verify is True
        assert args.link == "https://x/claim?a=1"

    def test_sync_defaults_to_full_scan(self) -> None:
        assert build_parser().parse_args(["sync"]).template_id is None

    def test_template_id_must_be_int(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["sync", "--template-id", "seven"])
        assert exc_info.value.code == EXIT_USAGE

    def test_exit_codes(self) -> None:
        assert (EXIT_OK, EXIT_CLAIM_ERROR, EXIT_USAGE) == (0, 1, 2)


class TestOfflineCommands:
    @pytest.mark.asyncio
    async def test_decode_link(
        self, settings: Settings, signed_grant: SignedGrant, capsys: pytest.CaptureFixture
    ) -> None:
        link = encode_claim_link(BASE_URL, signed_grant)
        args = argparse.Namespace(command="decode-link", link=link, verify=False)

        assert await run_command(args, settings) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["templateId"] == "7"
        assert data["nonce"] == str(signed_grant.grant.nonce)
        assert "signer" not in data

    @pytest.mark.asyncio
    async def test_decode_link_verify(
        self,
        settings: Settings,
        signed_grant: SignedGrant,
        issuer_address: str,
        capsys: pytest.CaptureFixture,
    ) -> None:
        link = encode_claim_link(BASE_URL, signed_grant)
        args = argparse.Namespace(command="decode-link", link=link, verify=True)

        assert await run_command(args, settings) == EXIT_OK
        assert json.loads(capsys.readouterr().out)["signer"] == issuer_address

    @pytest.mark.asyncio
    async def test_malformed_link_exit_code(
        self, settings: Settings, capsys: pytest.CaptureFixture
    ) -> None:
        args = argparse.Namespace(command="decode-link", link=BASE_URL + "/claim?user=0x1", verify=False)

        assert await run_command(args, settings) == EXIT_CLAIM_ERROR
        captured = capsys.readouterr()
        assert "ERROR:" in captured.err
        assert json.loads(captured.out)["kind"] == "MALFORMED_LINK"

    @pytest.mark.asyncio
    async def test_issue_link(
        self,
        settings: Settings,
        claimant_address: str,
        issuer_address: str,
        capsys: pytest.CaptureFixture,
    ) -> None:
        args = argparse.Namespace(
            command="issue-link",
            user=claimant_address,
            template_id=7,
            token_uri="ipfs://QmCard/7.json",
            profile_owner=None,
            nonce=99,
        )
        assert await run_command(args, settings) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["url"].startswith(BASE_URL + "/claim?")
        assert data["nonce"] == "99"

        verify = argparse.Namespace(command="decode-link", link=data["url"], verify=True)
        await run_command(verify, settings)
        assert json.loads(capsys.readouterr().out)["signer"] == issuer_address

    @pytest.mark.asyncio
    async def test_redeem_without_key(
        self, settings: Settings, signed_grant: SignedGrant, capsys: pytest.CaptureFixture
    ) -> None:
        args = argparse.Namespace(
            command="redeem", link=encode_claim_link(BASE_URL, signed_grant)
        )
        assert await run_command(args, settings) == EXIT_USAGE
        assert "CLAIMANT_PRIVATE_KEY" in capsys.readouterr().err
