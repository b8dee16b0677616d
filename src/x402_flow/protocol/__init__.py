"""x402 resource-protocol codecs and the instrument builder."""

from x402_flow.protocol.challenge import (
    PAYMENT_REQUIRED_HEADER,
    challenge_body,
    encode_challenge,
    parse,
)
from x402_flow.protocol.instrument import (
    build,
    canonical_message,
    verify_instrument,
)
from x402_flow.protocol.proof import (
    PAYMENT_SIGNATURE_HEADER,
    PaymentProof,
    decode_payment_proof,
    encode_payment_proof,
)

__all__ = [
    "PAYMENT_REQUIRED_HEADER",
    "PAYMENT_SIGNATURE_HEADER",
    "PaymentProof",
    "build",
    "canonical_message",
    "challenge_body",
    "decode_payment_proof",
    "encode_challenge",
    "encode_payment_proof",
    "parse",
    "verify_instrument",
]
