"""Proof-of-payment header codec.

After settlement the client retries the resource request with

    PAYMENT-SIGNATURE: base64({"x402Version": 2, "nonce": …, "settlementId": …, "payer": …})

Resource servers decode it and confirm the settlement with the facilitator.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass

from x402_flow.domain.exceptions import MalformedChallengeError
from x402_flow.protocol.challenge import X402_VERSION

PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"


@dataclass(frozen=True)
class PaymentProof:
    nonce: str
    settlement_id: str
    payer: str


def encode_payment_proof(proof: PaymentProof) -> dict[str, str]:
    """Return the request headers carrying ``proof``."""
    document = {
        "x402Version": X402_VERSION,
        "nonce": proof.nonce,
        "settlementId": proof.settlement_id,
        "payer": proof.payer,
    }
    payload = json.dumps(document, separators=(",", ":")).encode("utf-8")
    return {PAYMENT_SIGNATURE_HEADER: base64.b64encode(payload).decode("ascii")}


def decode_payment_proof(value: str) -> PaymentProof:
    """Decode a ``PAYMENT-SIGNATURE`` header value.

    Raises:
        MalformedChallengeError: If the value is not a well-formed proof.
    """
    try:
        document = json.loads(base64.b64decode(value.strip(), validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedChallengeError("Payment proof is not base64 JSON") from exc

    if not isinstance(document, dict):
        raise MalformedChallengeError("Payment proof must be a JSON object")
    fields = {}
    for key in ("nonce", "settlementId", "payer"):
        field_value = document.get(key)
        if not isinstance(field_value, str) or not field_value:
            raise MalformedChallengeError(f"Payment proof field '{key}' is missing")
        fields[key] = field_value
    return PaymentProof(
        nonce=fields["nonce"],
        settlement_id=fields["settlementId"],
        payer=fields["payer"],
    )
