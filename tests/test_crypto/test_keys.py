"""Tests for KeyMaterial and account id derivation."""

from __future__ import annotations

import hashlib

import pytest

from x402_flow.crypto.keys import KeyMaterial, derive_account_id, verify
from x402_flow.domain.exceptions import CryptoError

SEED_HEX = "0x" + "11" * 32


class TestAccountId:
    def test_deterministic(self) -> None:
        key = KeyMaterial.generate()
        assert key.account_id() == key.account_id()
        assert key.account_id() == derive_account_id(key.public_key)

    def test_aptos_format(self) -> None:
        key = KeyMaterial.from_private_key_hex(SEED_HEX)
        expected = "0x" + hashlib.sha3_256(key.public_key + b"\x00").hexdigest()
        assert key.account_id() == expected
        assert len(key.account_id()) == 66

    def test_same_seed_same_account(self) -> None:
        a = KeyMaterial.from_private_key_hex(SEED_HEX)
        b = KeyMaterial.from_private_key_hex(SEED_HEX[2:])
        assert a.account_id() == b.account_id()

    def test_distinct_keys_distinct_accounts(self) -> None:
        assert KeyMaterial.generate().account_id() != KeyMaterial.generate().account_id()

    def test_rejects_wrong_length_public_key(self) -> None:
        with pytest.raises(CryptoError):
            derive_account_id(b"\x01" * 31)


class TestSignVerify:
    def test_signature_verifies(self) -> None:
        key = KeyMaterial.generate()
        signature = key.sign(b"hello")
        assert verify(key.public_key, b"hello", signature)

    def test_tampered_message_fails(self) -> None:
        key = KeyMaterial.generate()
        signature = key.sign(b"hello")
        assert not verify(key.public_key, b"hellO", signature)

    def test_other_key_fails(self) -> None:
        key, other = KeyMaterial.generate(), KeyMaterial.generate()
        assert not verify(other.public_key, b"hello", key.sign(b"hello"))

    def test_garbage_signature_is_false_not_error(self) -> None:
        key = KeyMaterial.generate()
        assert not verify(key.public_key, b"hello", b"\x00" * 10)


class TestSecretHandling:
    def test_invalid_hex(self) -> None:
        with pytest.raises(CryptoError, match="not valid hex"):
            KeyMaterial.from_private_key_hex("0xzz")

    def test_wrong_seed_length(self) -> None:
        with pytest.raises(CryptoError):
            KeyMaterial.from_private_key_hex("0x" + "11" * 16)

    def test_context_manager_wipes(self) -> None:
        with KeyMaterial.from_private_key_hex(SEED_HEX) as key:
            assert not key.is_wiped
        assert key.is_wiped
        with pytest.raises(CryptoError, match="wiped"):
            key.sign(b"late")

    def test_wipes_on_exception(self) -> None:
        with pytest.raises(RuntimeError), KeyMaterial.generate() as key:
            raise RuntimeError("boom")
        assert key.is_wiped

    def test_account_id_survives_wipe(self) -> None:
        key = KeyMaterial.generate()
        account = key.account_id()
        key.wipe()
        assert key.account_id() == account

    def test_repr_redacts_secret(self) -> None:
        key = KeyMaterial.from_private_key_hex(SEED_HEX)
        text = repr(key) + str(key)
        assert "11" * 32 not in text
        assert "redacted" in text
        assert key.account_id() in text

    def test_private_key_export_round_trips(self) -> None:
        key = KeyMaterial.from_private_key_hex(SEED_HEX)
        assert key.private_key_hex() == SEED_HEX
