"""Read-only access to wallet files.

Wallet files are JSON documents written by the wallet tooling:

    {"address": "0x…", "private_key": "0x…", "network": "testnet", "seed_phrase": "…"}

This module only reads them. It never creates, rewrites or encrypts a wallet
file, and it never copies the seed phrase out of the parsed document.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from x402_flow.crypto.keys import KeyMaterial
from x402_flow.domain.exceptions import CryptoError

DEFAULT_WALLET_DIR = Path("~/.x402/wallets")


@dataclass(frozen=True)
class WalletInfo:
    """Public, non-secret part of a wallet file."""

    address: str
    network: str
    path: Path


def wallet_path_for(address: str, wallet_dir: Path | None = None) -> Path:
    """Return the conventional file location for a wallet address."""
    directory = (wallet_dir or DEFAULT_WALLET_DIR).expanduser()
    return directory / f"{address}.json"


def load_wallet(path: str | Path) -> tuple[KeyMaterial, WalletInfo]:
    """Load key material from a wallet file.

    Args:
        path: Path to the wallet JSON file.

    Returns:
        The KeyMaterial and the wallet's public details.

    Raises:
        CryptoError: If the file is missing, unreadable, malformed, or its
            address does not match the key it contains.
    """
    wallet_file = Path(path).expanduser()
    try:
        document = json.loads(wallet_file.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise CryptoError(f"Wallet file not found: {wallet_file}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise CryptoError(f"Wallet file unreadable: {wallet_file}") from exc

    if not isinstance(document, dict):
        raise CryptoError(f"Wallet file is not a JSON object: {wallet_file}")

    private_key = document.get("private_key")
    address = document.get("address")
    if not isinstance(private_key, str) or not isinstance(address, str):
        raise CryptoError(f"Wallet file missing address or private_key: {wallet_file}")

    key = KeyMaterial.from_private_key_hex(private_key)
    if key.account_id().lower() != address.lower():
        key.wipe()
        raise CryptoError(f"Wallet address does not match its private key: {wallet_file}")

    info = WalletInfo(
        address=key.account_id(),
        network=str(document.get("network", "testnet")),
        path=wallet_file,
    )
    return key, info
