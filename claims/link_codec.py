"""Claim link codec — SignedGrant <-> shareable URL.

Link shape::

    {base_url}/claim?user=<addr>&profileOwner=<addr>&templateId=<uint>
        &nonce=<uint>&tokenURI=<string>&signature=<hex>

Integers travel as plain decimal strings so uint256 values survive intact.
"""

from __future__ import annotations

from urllib.parse import parse_qs, quote, urlencode, urlsplit

import structlog
from pydantic import ValidationError

from core.errors import MalformedLink
from models.claim import UINT256_MAX, ClaimGrant, SignedGrant

logger = structlog.get_logger("claims.link_codec")

CLAIM_PATH = "/claim"

# (query parameter, ClaimGrant field); signature handled separately
_GRANT_PARAMS: tuple[tuple[str, str], ...] = (
    ("user", "user"),
    ("profileOwner", "profile_owner"),
    ("templateId", "template_id"),
    ("nonce", "nonce"),
    ("tokenURI", "token_uri"),
)
_INT_PARAMS = frozenset({"templateId", "nonce"})
LINK_PARAMS: tuple[str, ...] = tuple(p for p, _ in _GRANT_PARAMS) + ("signature",)


def encode_claim_link(base_url: str, signed: SignedGrant) -> str:
    """Build the claim URL for *signed* under *base_url*."""
    grant = signed.grant
    query = urlencode(
        [
            ("user", grant.user),
            ("profileOwner", grant.profile_owner),
            ("templateId", str(grant.template_id)),
            ("nonce", str(grant.nonce)),
            ("tokenURI", grant.token_uri),
            ("signature", signed.signature),
        ],
        quote_via=quote,
    )
    return f"{base_url.rstrip('/')}{CLAIM_PATH}?{query}"


def decode_claim_link(link: str) -> SignedGrant:
    """Parse a claim URL (or a bare query string) into a SignedGrant.

    Raises
    ------
    MalformedLink
        If any of the six parameters is missing, repeated, empty or does not
        parse.  ``field`` names the offending parameter.
    """
    query = _query_part(link.strip())
    params = parse_qs(query, keep_blank_values=True)

    values: dict[str, str] = {}
    for name in LINK_PARAMS:
        found = params.get(name)
        if not found:
            raise MalformedLink(f"Missing parameter: {name}", field=name)
        if len(found) > 1:
            raise MalformedLink(f"Parameter given more than once: {name}", field=name)
        value = found[0]
        if not value:
            raise MalformedLink(f"Empty parameter: {name}", field=name)
        values[name] = value

    fields: dict[str, object] = {}
    for param, attr in _GRANT_PARAMS:
        raw = values[param]
        fields[attr] = _parse_uint(param, raw) if param in _INT_PARAMS else raw

    try:
        grant = ClaimGrant(**fields)
    except ValidationError as exc:
        raise MalformedLink(
            f"Invalid claim parameter: {exc.errors()[0]['msg']}",
            field=_param_for(exc),
        ) from exc

    try:
        signed = SignedGrant(grant=grant, signature=values["signature"])
    except ValidationError as exc:
        raise MalformedLink("Invalid signature encoding", field="signature") from exc

    logger.debug("link_codec.decoded", template_id=grant.template_id, nonce=grant.nonce)
    return signed


def _query_part(link: str) -> str:
    if "?" in link or "://" in link:
        return urlsplit(link).query
    return link.lstrip("?")


def _parse_uint(param: str, raw: str) -> int:
    # int() would also accept "+1", " 1", "1_000" and non-ASCII digits
    if not (raw.isascii() and raw.isdigit()):
        raise MalformedLink(f"{param} must be a decimal integer", field=param)
    value = int(raw)
    if value > UINT256_MAX:
        raise MalformedLink(f"{param} exceeds uint256", field=param)
    return value


def _param_for(exc: ValidationError) -> str | None:
    loc = exc.errors()[0].get("loc") or ()
    attr = loc[0] if loc else None
    return next((p for p, a in _GRANT_PARAMS if a == attr), None)
