"""402 challenge parsing and encoding.

A resource server answers an unpaid request with HTTP 402 and a challenge.
The challenge travels in the ``PAYMENT-REQUIRED`` header as base64-encoded
JSON using x402 field names:

    {"scheme": "exact", "network": "testnet", "amount": "1000",
     "asset": "…", "payTo": "0x…", "resource": "https://…", "nonce": "…"}

When the header is absent, the JSON body is tried instead, either as the
challenge object itself or as the first entry of an ``accepts`` list.

Both directions are pure functions: no I/O, no logging.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping
from typing import Any

from x402_flow.domain.exceptions import MalformedChallengeError, NotAChallengeError
from x402_flow.domain.models import MAX_NONCE_LENGTH, U64_MAX, PaymentChallenge

PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
X402_VERSION = 2


def _header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup that works for plain dicts too."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def _decode_header(value: str) -> Any:
    try:
        raw = base64.b64decode(value.strip(), validate=True)
        return json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedChallengeError(
            f"{PAYMENT_REQUIRED_HEADER} header is not base64 JSON"
        ) from exc


def _decode_body(body: bytes | str | Mapping[str, Any] | None) -> Any:
    if body is None or body == b"" or body == "":
        raise MalformedChallengeError("402 response carries no challenge header or body")
    if isinstance(body, Mapping):
        document: Any = body
    else:
        try:
            document = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedChallengeError("402 body is not JSON") from exc
    if isinstance(document, Mapping) and "accepts" in document:
        accepts = document["accepts"]
        if not isinstance(accepts, list) or not accepts:
            raise MalformedChallengeError("'accepts' must be a non-empty list")
        return accepts[0]
    return document


def _required_str(fields: Mapping[str, Any], key: str) -> str:
    value = fields.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedChallengeError(f"Challenge field '{key}' must be a non-empty string")
    return value


def _parse_amount(value: Any) -> int:
    """Accept a JSON integer or a decimal-digit string in u64 range."""
    if isinstance(value, bool):
        raise MalformedChallengeError("Challenge field 'amount' must be an integer")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and value.isascii() and value.isdigit():
        amount = int(value)
    else:
        raise MalformedChallengeError("Challenge field 'amount' must be a non-negative integer")
    if amount < 0:
        raise MalformedChallengeError("Challenge field 'amount' must be a non-negative integer")
    if amount > U64_MAX:
        raise MalformedChallengeError("Challenge field 'amount' overflows u64")
    return amount


def _parse_nonce(fields: Mapping[str, Any]) -> str:
    nonce = _required_str(fields, "nonce")
    if len(nonce) > MAX_NONCE_LENGTH:
        raise MalformedChallengeError(
            f"Challenge field 'nonce' exceeds {MAX_NONCE_LENGTH} characters"
        )
    return nonce


def parse(
    http_status: int,
    headers: Mapping[str, str],
    body: bytes | str | Mapping[str, Any] | None = None,
) -> PaymentChallenge:
    """Extract a PaymentChallenge from a 402 response.

    Args:
        http_status: Status code of the response.
        headers: Response headers (any mapping; lookup is case-insensitive).
        body: Raw response body, or an already-decoded JSON object.

    Returns:
        The parsed challenge.

    Raises:
        NotAChallengeError: If ``http_status`` is not 402.
        MalformedChallengeError: If a required field is missing or mistyped,
            the amount overflows, or the nonce is overlong.
    """
    if http_status != 402:
        raise NotAChallengeError(http_status)

    header_value = _header(headers, PAYMENT_REQUIRED_HEADER)
    fields = _decode_header(header_value) if header_value else _decode_body(body)
    if not isinstance(fields, Mapping):
        raise MalformedChallengeError("Challenge must be a JSON object")

    optional = {}
    for key in ("scheme", "network", "asset"):
        value = fields.get(key)
        if value is not None:
            if not isinstance(value, str):
                raise MalformedChallengeError(f"Challenge field '{key}' must be a string")
            optional[key] = value

    return PaymentChallenge(
        recipient_account=_required_str(fields, "payTo"),
        required_amount=_parse_amount(fields.get("amount")),
        resource_url=_required_str(fields, "resource"),
        nonce=_parse_nonce(fields),
        **optional,
    )


def challenge_fields(challenge: PaymentChallenge) -> dict[str, Any]:
    """Return the x402 JSON object describing ``challenge``."""
    return {
        "scheme": challenge.scheme,
        "network": challenge.network,
        "amount": str(challenge.required_amount),
        "asset": challenge.asset,
        "payTo": challenge.recipient_account,
        "resource": challenge.resource_url,
        "nonce": challenge.nonce,
    }


def encode_challenge(challenge: PaymentChallenge) -> dict[str, str]:
    """Return the response headers a resource server attaches to its 402."""
    payload = json.dumps(challenge_fields(challenge), separators=(",", ":"))
    return {PAYMENT_REQUIRED_HEADER: base64.b64encode(payload.encode("utf-8")).decode("ascii")}


def challenge_body(challenge: PaymentChallenge) -> dict[str, Any]:
    """Return a JSON 402 body carrying ``challenge`` in an ``accepts`` list."""
    return {
        "x402Version": X402_VERSION,
        "error": "Payment required",
        "accepts": [challenge_fields(challenge)],
    }
