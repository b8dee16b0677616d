"""Tests for payment instrument building and verification."""

from __future__ import annotations

import dataclasses

import pytest

from x402_flow.crypto.keys import KeyMaterial
from x402_flow.domain.exceptions import (
    AmountOutOfRangeError,
    InsufficientAmountError,
    SignatureSelfCheckError,
)
from x402_flow.domain.models import U64_MAX, PaymentChallenge, PaymentInstrument
from x402_flow.protocol.instrument import build, canonical_message, verify_instrument


class TestCanonicalMessage:
    def test_sorted_compact_json(self) -> None:
        message = canonical_message("n1", "0xpayer", 1000, "0xpayee")
        assert message == (
            b'{"amount":"1000","nonce":"n1","payer":"0xpayer","recipient":"0xpayee"}'
        )

    def test_each_field_changes_bytes(self) -> None:
        base = canonical_message("n1", "p", 1, "r")
        assert canonical_message("n2", "p", 1, "r") != base
        assert canonical_message("n1", "q", 1, "r") != base
        assert canonical_message("n1", "p", 2, "r") != base
        assert canonical_message("n1", "p", 1, "s") != base


class TestBuild:
    @pytest.mark.parametrize("amount", [1000, 1001, U64_MAX])
    def test_build_then_verify(
        self, challenge: PaymentChallenge, payer: KeyMaterial, amount: int
    ) -> None:
        instrument = build(challenge, payer, amount)
        assert verify_instrument(instrument)
        assert instrument.amount == amount
        assert instrument.payer_account == payer.account_id()
        assert instrument.nonce == challenge.nonce

    def test_zero_price_zero_amount(self, payer: KeyMaterial) -> None:
        challenge = PaymentChallenge("acct1", 0, "https://x", "free")
        assert verify_instrument(build(challenge, payer, 0))

    def test_insufficient_amount(self, challenge: PaymentChallenge, payer: KeyMaterial) -> None:
        with pytest.raises(InsufficientAmountError) as exc_info:
            build(challenge, payer, 999)
        assert exc_info.value.required == 1000
        assert exc_info.value.offered == 999

    @pytest.mark.parametrize("amount", [U64_MAX + 1, -1])
    def test_amount_outside_u64(self, payer: KeyMaterial, amount: int) -> None:
        challenge = PaymentChallenge("acct1", 0, "https://x", "n1")
        with pytest.raises(AmountOutOfRangeError) as exc_info:
            build(challenge, payer, amount)
        assert exc_info.value.offered == amount

    def test_self_check_catches_bad_signer(
        self, challenge: PaymentChallenge, payer: KeyMaterial, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(KeyMaterial, "sign", lambda self, message: b"\x00" * 64)
        with pytest.raises(SignatureSelfCheckError):
            build(challenge, payer, 1000)

    def test_repr_hides_signature(self, instrument: PaymentInstrument) -> None:
        assert instrument.signature.hex() not in repr(instrument)


class TestVerifyInstrument:
    def test_rebound_to_other_nonce_fails(self, instrument: PaymentInstrument) -> None:
        other = dataclasses.replace(instrument.challenge, nonce="n2")
        assert not verify_instrument(dataclasses.replace(instrument, challenge=other))

    def test_raised_amount_fails(self, instrument: PaymentInstrument) -> None:
        assert not verify_instrument(dataclasses.replace(instrument, amount=5000))

    def test_redirected_recipient_fails(self, instrument: PaymentInstrument) -> None:
        other = dataclasses.replace(instrument.challenge, recipient_account="0xthief")
        assert not verify_instrument(dataclasses.replace(instrument, challenge=other))

    def test_public_key_must_match_payer(self, instrument: PaymentInstrument) -> None:
        stranger = KeyMaterial.generate()
        forged = dataclasses.replace(instrument, payer_public_key=stranger.public_key)
        assert not verify_instrument(forged)

    def test_malformed_public_key(self, instrument: PaymentInstrument) -> None:
        assert not verify_instrument(dataclasses.replace(instrument, payer_public_key=b"\x01"))
