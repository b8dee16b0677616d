"""Key material and wallet loading."""

from x402_flow.crypto.keys import KeyMaterial, derive_account_id, verify
from x402_flow.crypto.wallet import WalletInfo, load_wallet, wallet_path_for

__all__ = [
    "KeyMaterial",
    "WalletInfo",
    "derive_account_id",
    "load_wallet",
    "verify",
    "wallet_path_for",
]
