"""Claims CLI — issue, inspect, check and redeem claim links.

Usage:
    repcard-claims issue-link --user 0x... --template-id 7 --token-uri ipfs://...
    repcard-claims decode-link "<claim url>" [--verify]
    repcard-claims check "<claim url>"
    repcard-claims redeem "<claim url>"
    repcard-claims sync [--template-id 7]

Configuration comes from the environment / ``.env`` (see ``config.settings``).
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

import structlog
import uvloop

from claims.link_codec import decode_claim_link
from config.settings import Settings
from core.context import AppContext
from core.errors import ClaimError
from core.logger import setup_logging
from models.claim import SignedGrant
from web3_infra.reputation_card import LocalTransactionSigner

logger = structlog.get_logger("cli.claims")

EXIT_OK = 0
EXIT_CLAIM_ERROR = 1
# same code argparse exits with on a bad command line
EXIT_USAGE = 2


def _grant_json(signed: SignedGrant) -> dict[str, Any]:
    grant = signed.grant
    return {
        "user": grant.user,
        "profileOwner": grant.profile_owner,
        # uint256 values as strings, JSON numbers lose precision
        "templateId": str(grant.template_id),
        "nonce": str(grant.nonce),
        "tokenURI": grant.token_uri,
        "signature": signed.signature,
    }


def _print_json(data: dict[str, Any]) -> None:
    print(json.dumps(data, indent=2))


async def cmd_issue_link(args: argparse.Namespace, settings: Settings) -> int:
    """Sign a grant with ISSUER_PRIVATE_KEY and print its link."""
    ctx = AppContext(settings)
    try:
        issued = await ctx.link_issuer().issue(
            user=args.user,
            template_id=args.template_id,
            token_uri=args.token_uri,
            profile_owner=args.profile_owner,
            nonce=args.nonce,
        )
    finally:
        await ctx.stop()
    _print_json({"url": issued.url, **_grant_json(issued.signed)})
    return EXIT_OK


async def cmd_decode_link(args: argparse.Namespace, settings: Settings) -> int:
    """Decode a link offline; ``--verify`` also prints the recovered signer."""
    signed = decode_claim_link(args.link)
    data = _grant_json(signed)
    if args.verify:
        data["signer"] = AppContext(settings).verifier.recover_signer(signed)
    _print_json(data)
    return EXIT_OK


async def cmd_check(args: argparse.Namespace, settings: Settings) -> int:
    """Run eligibility and signature checks without sending anything."""
    signed = decode_claim_link(args.link)
    async with AppContext(settings) as ctx:
        template, recipient = await ctx.redemption_flow().check(signed)
    _print_json({
        "eligible": True,
        "templateId": str(template.template_id),
        "issuer": template.issuer,
        "recipient": recipient.address,
        "profileId": str(recipient.profile_id) if recipient.profile_id else None,
    })
    return EXIT_OK


async def cmd_redeem(args: argparse.Namespace, settings: Settings) -> int:
    """Redeem a link with CLAIMANT_PRIVATE_KEY."""
    if not settings.CLAIMANT_PRIVATE_KEY:
        print("ERROR: CLAIMANT_PRIVATE_KEY is not set", file=sys.stderr)
        return EXIT_USAGE
    signed = decode_claim_link(args.link)
    claimant = LocalTransactionSigner(settings.CLAIMANT_PRIVATE_KEY)

    async with AppContext(settings) as ctx:
        outcome = await ctx.redemption_flow().redeem(signed, claimant)

    result: dict[str, Any] = {
        "state": outcome.state.value,
        "txHash": outcome.tx_hash,
        "cardId": str(outcome.card_id) if outcome.card_id is not None else None,
    }
    if outcome.error is not None and not outcome.silent:
        result["error"] = outcome.error.to_dict()
    _print_json(result)
    if outcome.success or outcome.silent:
        return EXIT_OK
    return EXIT_CLAIM_ERROR


async def cmd_sync(args: argparse.Namespace, settings: Settings) -> int:
    """Resync one template, or scan all of them."""
    async with AppContext(settings) as ctx:
        if args.template_id is not None:
            result = await ctx.syncer.sync_template(args.template_id)
            _print_json({
                "templateId": str(result.template_id),
                "exists": result.exists,
                "error": result.error,
            })
            return EXIT_OK if result.ok else EXIT_CLAIM_ERROR

        report = await ctx.syncer.sync_all()
    _print_json({
        "scanned": report.scanned,
        "synced": report.synced,
        "failed": report.failed,
        "stoppedAt": report.stopped_at,
    })
    return EXIT_OK if not report.failed else EXIT_CLAIM_ERROR


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Reputation card claims — claim link issuance and redemption",
        prog="repcard-claims",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # issue-link
    sub_issue = subparsers.add_parser("issue-link", help="Sign a claim grant and print its link")
    sub_issue.add_argument("--user", required=True, help="Recipient wallet address")
    sub_issue.add_argument("--template-id", type=int, required=True, help="Card template id")
    sub_issue.add_argument("--token-uri", required=True, help="Metadata URI of the card")
    sub_issue.add_argument(
        "--profile-owner",
        default=None,
        help="Profile owner address (default: --user)",
    )
    sub_issue.add_argument("--nonce", type=int, default=None, help="Explicit nonce (default: generated)")

    # decode-link
    sub_decode = subparsers.add_parser("decode-link", help="Decode a claim link")
    sub_decode.add_argument("link", help="Claim URL or query string")
    sub_decode.add_argument("--verify", action="store_true", help="Also recover the signer address")

    # check
    sub_check = subparsers.add_parser("check", help="Check eligibility and issuer signature")
    sub_check.add_argument("link", help="Claim URL or query string")

    # redeem
    sub_redeem = subparsers.add_parser("redeem", help="Redeem a claim link on-chain")
    sub_redeem.add_argument("link", help="Claim URL or query string")

    # sync
    sub_sync = subparsers.add_parser("sync", help="Resync templates into the cache")
    sub_sync.add_argument("--template-id", type=int, default=None, help="Single template to resync")

    return parser


_COMMANDS = {
    "issue-link": cmd_issue_link,
    "decode-link": cmd_decode_link,
    "check": cmd_check,
    "redeem": cmd_redeem,
    "sync": cmd_sync,
}


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    """Dispatch *args* and map claim errors onto exit codes."""
    handler = _COMMANDS[args.command]
    try:
        return await handler(args, settings)
    except ClaimError as exc:
        logger.warning("cli.claim_error", command=args.command, kind=exc.kind.value)
        print(f"ERROR: {exc.user_message}", file=sys.stderr)
        _print_json(exc.to_dict())
        return EXIT_CLAIM_ERROR


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command not in _COMMANDS:
        parser.print_help()
        sys.exit(EXIT_USAGE)

    settings = Settings()
    setup_logging(settings)
    sys.exit(uvloop.run(run_command(args, settings)))


if __name__ == "__main__":
    main()
