"""Payment instrument construction and verification.

The signed message is the canonical encoding of the four values that bind an
instrument to its challenge:

    {"amount":"<int>","nonce":"…","payer":"0x…","recipient":"0x…"}

i.e. compact JSON with sorted keys, UTF-8, amount as a decimal string. The
builder and the facilitator both go through ``canonical_message`` so the two
sides can never drift apart.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from x402_flow.crypto.keys import derive_account_id, verify
from x402_flow.domain.exceptions import (
    AmountOutOfRangeError,
    CryptoError,
    InsufficientAmountError,
    SignatureSelfCheckError,
)
from x402_flow.domain.models import U64_MAX, PaymentInstrument, utcnow

if TYPE_CHECKING:
    from x402_flow.crypto.keys import KeyMaterial
    from x402_flow.domain.models import PaymentChallenge


def canonical_message(nonce: str, payer_account: str, amount: int, recipient_account: str) -> bytes:
    """Return the bytes an instrument signature covers."""
    document = {
        "amount": str(amount),
        "nonce": nonce,
        "payer": payer_account,
        "recipient": recipient_account,
    }
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


def instrument_message(instrument: PaymentInstrument) -> bytes:
    return canonical_message(
        instrument.challenge.nonce,
        instrument.payer_account,
        instrument.amount,
        instrument.challenge.recipient_account,
    )


def verify_instrument(instrument: PaymentInstrument) -> bool:
    """Check that the instrument is signed by the account it names.

    The payer's public key travels with the instrument; it must hash to
    ``payer_account`` and the signature must verify under it.
    """
    try:
        derived = derive_account_id(instrument.payer_public_key)
    except CryptoError:
        return False
    if derived.lower() != instrument.payer_account.lower():
        return False
    return verify(instrument.payer_public_key, instrument_message(instrument), instrument.signature)


def build(challenge: PaymentChallenge, payer: KeyMaterial, amount: int) -> PaymentInstrument:
    """Build a signed instrument paying ``amount`` against ``challenge``.

    Raises:
        AmountOutOfRangeError: If ``amount`` is not a u64.
        InsufficientAmountError: If ``amount`` is below the required amount.
        SignatureSelfCheckError: If the produced signature does not verify.
        CryptoError: If signing itself fails.
    """
    if not 0 <= amount <= U64_MAX:
        raise AmountOutOfRangeError(amount)
    if amount < challenge.required_amount:
        raise InsufficientAmountError(challenge.required_amount, amount)

    payer_account = payer.account_id()
    message = canonical_message(challenge.nonce, payer_account, amount, challenge.recipient_account)
    instrument = PaymentInstrument(
        challenge=challenge,
        payer_account=payer_account,
        payer_public_key=payer.public_key,
        amount=amount,
        signature=payer.sign(message),
        created_at=utcnow(),
    )

    if not verify_instrument(instrument):
        raise SignatureSelfCheckError()
    return instrument
