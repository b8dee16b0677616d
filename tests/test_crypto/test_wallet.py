"""Tests for read-only wallet file loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from x402_flow.crypto.keys import KeyMaterial
from x402_flow.crypto.wallet import load_wallet, wallet_path_for
from x402_flow.domain.exceptions import CryptoError


def _write_wallet(directory: Path, key: KeyMaterial, **overrides: object) -> Path:
    document = {
        "address": key.account_id(),
        "private_key": key.private_key_hex(),
        "network": "testnet",
        "seed_phrase": "abandon " * 11 + "about",
    }
    document.update(overrides)
    path = directory / f"{document['address']}.json"
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


class TestLoadWallet:
    def test_loads_matching_wallet(self, tmp_path: Path) -> None:
        source = KeyMaterial.generate()
        path = _write_wallet(tmp_path, source)

        key, info = load_wallet(path)

        assert key.account_id() == source.account_id()
        assert info.address == source.account_id()
        assert info.network == "testnet"
        assert info.path == path

    def test_does_not_modify_file(self, tmp_path: Path) -> None:
        path = _write_wallet(tmp_path, KeyMaterial.generate())
        before = path.read_bytes()
        load_wallet(path)
        assert path.read_bytes() == before

    def test_address_mismatch(self, tmp_path: Path) -> None:
        path = _write_wallet(tmp_path, KeyMaterial.generate(), address="0x" + "00" * 32)
        with pytest.raises(CryptoError, match="does not match"):
            load_wallet(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(CryptoError, match="not found"):
            load_wallet(tmp_path / "nope.json")

    def test_not_json(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(CryptoError, match="unreadable"):
            load_wallet(path)

    def test_missing_private_key(self, tmp_path: Path) -> None:
        path = tmp_path / "partial.json"
        path.write_text(json.dumps({"address": "0xabc"}), encoding="utf-8")
        with pytest.raises(CryptoError, match="missing"):
            load_wallet(path)

    def test_error_never_leaks_key(self, tmp_path: Path) -> None:
        source = KeyMaterial.generate()
        secret = source.private_key_hex()
        path = _write_wallet(tmp_path, source, address="0x" + "00" * 32)
        with pytest.raises(CryptoError) as exc_info:
            load_wallet(path)
        assert secret[2:] not in str(exc_info.value)


class TestWalletPath:
    def test_conventional_location(self, tmp_path: Path) -> None:
        assert wallet_path_for("0xabc", tmp_path) == tmp_path / "0xabc.json"

    def test_default_directory_is_expanded(self) -> None:
        path = wallet_path_for("0xabc")
        assert "~" not in str(path)
        assert path.parts[-3:] == (".x402", "wallets", "0xabc.json")
