"""Claim error taxonomy — one closed hierarchy for every failure a claim
redemption can surface.

Each concrete error carries an ``ErrorKind`` tag and a ``retryable`` flag.
Only ``NetworkError`` is retryable; everything else is terminal.
``classify_error()`` maps raw exceptions coming out of web3 / the transport /
a wallet session onto the hierarchy.  Unknown exceptions are *not* classified
(``None``) and are never retried.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, ClassVar

from web3.exceptions import ContractLogicError, TimeExhausted


class ErrorKind(str, Enum):
    """Tag of a ``ClaimError`` variant."""

    USER_REJECTED = "USER_REJECTED"
    MALFORMED_LINK = "MALFORMED_LINK"
    SIGNER_MISMATCH = "SIGNER_MISMATCH"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    NETWORK = "NETWORK"
    CHAIN_REVERT = "CHAIN_REVERT"
    CACHE_SYNC = "CACHE_SYNC"


class ClaimError(Exception):
    """Base class for all claim protocol errors."""

    kind: ClassVar[ErrorKind]
    retryable: ClassVar[bool] = False
    default_user_message: ClassVar[str] = "Something went wrong with this claim."

    @property
    def user_message(self) -> str:
        return self.default_user_message

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": str(self),
            "user_message": self.user_message,
            "retryable": self.retryable,
        }


class UserRejected(ClaimError):
    """The wallet / signer declined.  Treated as a cancellation, not a failure."""

    kind = ErrorKind.USER_REJECTED
    default_user_message = "Request was cancelled. You can try again when ready."


class MalformedLink(ClaimError):
    """A claim link is missing a field or a field does not parse."""

    kind = ErrorKind.MALFORMED_LINK
    default_user_message = "This claim link is invalid or incomplete."

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    @property
    def user_message(self) -> str:
        if self.field:
            return f"This claim link is invalid: '{self.field}' is missing or malformed."
        return self.default_user_message


class SignerMismatch(ClaimError):
    """The recovered signer is not the template issuer."""

    kind = ErrorKind.SIGNER_MISMATCH
    default_user_message = (
        "The claim link signature is invalid. Please request a new claim link from the issuer."
    )

    def __init__(
        self,
        message: str,
        expected: str | None = None,
        recovered: str | None = None,
    ) -> None:
        super().__init__(message)
        self.expected = expected
        self.recovered = recovered


class NotEligible(ClaimError):
    """An eligibility rule failed; ``reason`` names the rule."""

    kind = ErrorKind.NOT_ELIGIBLE

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason
        self._message = message

    @property
    def user_message(self) -> str:
        return self._message or "You are not eligible to claim this card."


class NetworkError(ClaimError):
    """Transient transport failure.  The only retryable kind."""

    kind = ErrorKind.NETWORK
    retryable = True
    default_user_message = "Network connection issue. Please check your connection and try again."


class ChainRevert(ClaimError):
    """The contract reverted; ``reason`` holds the decoded revert string."""

    kind = ErrorKind.CHAIN_REVERT

    def __init__(self, reason: str, tx_hash: str | None = None) -> None:
        super().__init__(f"Contract reverted: {reason}")
        self.reason = reason
        self.tx_hash = tx_hash

    @property
    def user_message(self) -> str:
        return friendly_revert_message(self.reason)


class CacheSyncError(ClaimError):
    """Mirroring chain state into the cache failed.  Never blocks a redemption."""

    kind = ErrorKind.CACHE_SYNC
    default_user_message = "Cached data may be stale."

    def __init__(self, message: str, template_id: int | None = None) -> None:
        super().__init__(message)
        self.template_id = template_id


# ── Revert decoding ──────────────────────────────────────────────────

# (needles, friendly message); first match wins, needles compared lower-case
_REVERT_MESSAGES: list[tuple[tuple[str, ...], str]] = [
    (("already claimed", "alreadyclaimed"), "You have already claimed this card."),
    (("invalid signature", "invalidsignature"),
     "The claim link signature is invalid. Please request a new claim link from the issuer."),
    (("nonce used", "nonceused"), "This claim link has already been used."),
    (("template paused", "templatepaused", "enforcedpause"), "This template is currently paused."),
    (("max supply", "maxsupply"), "This template has reached its maximum supply."),
    (("not started", "claimnotstarted"), "Claiming for this template has not started yet."),
    (("ended", "expired", "claimended"), "The claiming period for this template has ended."),
    (("not whitelisted", "notwhitelisted"), "Your address is not on this template's whitelist."),
    (("no profile", "noprofile", "profilenotfound"), "You need to create a profile first."),
    (("template not found", "templatenotfound", "invalid template"), "This template does not exist."),
    (("only issuer", "onlyissuer", "unauthorizedissuer"),
     "You do not have permission to issue cards from this template."),
    (("accesscontrol", "unauthorized", "missing role"), "You do not have permission to perform this action."),
    (("insufficient funds",), "Insufficient funds to pay for gas."),
    (("nonce too low",), "This transaction nonce was already used. Please try again."),
    (("replacement transaction",),
     "Another transaction from this wallet is pending. Please wait for it and try again."),
    (("intrinsic gas too low", "exceeds block gas limit"),
     "The transaction gas limit was rejected by the network."),
]


def decode_revert_reason(raw: str) -> str:
    """Strip the node's ``execution reverted:`` prefix from a revert message."""
    reason = raw.strip()
    lowered = reason.lower()
    for prefix in ("execution reverted:", "execution reverted"):
        if lowered.startswith(prefix):
            reason = reason[len(prefix):].strip()
            break
    return reason or "execution reverted"


def friendly_revert_message(reason: str) -> str:
    """Map a decoded revert reason onto a message fit for an end user."""
    lowered = reason.lower()
    for needles, message in _REVERT_MESSAGES:
        if any(n in lowered for n in needles):
            return message
    return "The transaction was rejected by the contract."


# ── Classification ───────────────────────────────────────────────────

_USER_REJECTION_CODES = {4001, "ACTION_REJECTED"}
_USER_REJECTION_NEEDLES = (
    "user rejected",
    "user denied",
    "user cancelled",
    "rejected the request",
)
_TRANSIENT_NEEDLES = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "fetch failed",
    "econnrefused",
    "rate limit",
    "too many requests",
    "429",
    "502",
    "503",
    "504",
)
# The node refused the transaction outright; nothing was queued for mining.
_TX_REJECTION_NEEDLES = (
    "nonce too low",
    "replacement transaction",
    "insufficient funds",
    "intrinsic gas too low",
    "exceeds block gas limit",
)


def classify_error(exc: BaseException) -> ClaimError | None:
    """Map *exc* onto the ``ClaimError`` hierarchy.

    Returns the exception itself when it already is a ``ClaimError`` and
    ``None`` when it cannot be classified.
    """
    if isinstance(exc, ClaimError):
        return exc

    if isinstance(exc, ContractLogicError):
        raw = getattr(exc, "message", None) or str(exc)
        return ChainRevert(decode_revert_reason(str(raw)))

    if isinstance(exc, TimeExhausted):
        return NetworkError(f"Timed out waiting for transaction receipt: {exc}")

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return NetworkError(f"{type(exc).__name__}: {exc}")

    code = getattr(exc, "code", None)
    message = str(exc).lower()
    rejected_code = isinstance(code, (int, str)) and code in _USER_REJECTION_CODES
    if rejected_code or any(n in message for n in _USER_REJECTION_NEEDLES):
        return UserRejected(str(exc) or "User rejected the request")

    if "execution reverted" in message:
        return ChainRevert(decode_revert_reason(str(exc)))

    if any(n in message for n in _TX_REJECTION_NEEDLES):
        return ChainRevert(_node_message(exc))

    if isinstance(exc, OSError) or any(n in message for n in _TRANSIENT_NEEDLES):
        return NetworkError(str(exc) or type(exc).__name__)

    return None


def is_retryable(exc: BaseException) -> bool:
    classified = classify_error(exc)
    return classified is not None and classified.retryable


def _node_message(exc: BaseException) -> str:
    """JSON-RPC errors arrive as ``ValueError({"code": ..., "message": ...})``."""
    if exc.args and isinstance(exc.args[0], dict):
        message = exc.args[0].get("message")
        if message:
            return str(message)
    return str(exc)
