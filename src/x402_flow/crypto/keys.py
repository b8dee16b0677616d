"""Ed25519 key material for payers and facilitators.

KeyMaterial holds a signing key pair and derives an Aptos-style account id:

    account_id = "0x" + hex(sha3_256(public_key || 0x00))

The 32-byte private seed lives in a bytearray so it can be overwritten in
place. ``wipe()`` zeroes it; the context-manager form and ``__del__`` both
call it, so ``with KeyMaterial.generate() as key: ...`` guarantees cleanup on
normal return, exception and task cancellation alike. CPython may still hold
transient copies (the libsodium signing key object built inside ``sign``);
that is the limit of what a Python process can promise.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

from nacl import exceptions as nacl_exceptions
from nacl.signing import SigningKey, VerifyKey

from x402_flow.domain.exceptions import CryptoError

if TYPE_CHECKING:
    from types import TracebackType

SEED_LENGTH = 32
PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64

# Aptos authentication-key scheme byte for single-signer Ed25519
_ED25519_SCHEME = b"\x00"


def derive_account_id(public_key: bytes) -> str:
    """Deterministically derive an account id from an Ed25519 public key."""
    if len(public_key) != PUBLIC_KEY_LENGTH:
        raise CryptoError(f"Public key must be {PUBLIC_KEY_LENGTH} bytes")
    digest = hashlib.sha3_256(public_key + _ED25519_SCHEME).hexdigest()
    return "0x" + digest


def verify(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Return True if ``signature`` is a valid Ed25519 signature of ``message``."""
    if len(public_key) != PUBLIC_KEY_LENGTH or len(signature) != SIGNATURE_LENGTH:
        return False
    try:
        VerifyKey(public_key).verify(message, signature)
    except nacl_exceptions.CryptoError:
        return False
    return True


def _strip_hex(value: str) -> str:
    value = value.strip()
    return value[2:] if value.lower().startswith("0x") else value


class KeyMaterial:
    """An Ed25519 key pair with a derived account id."""

    def __init__(self, seed: bytes | bytearray) -> None:
        if len(seed) != SEED_LENGTH:
            raise CryptoError(f"Private key must be {SEED_LENGTH} bytes")
        self._seed = bytearray(seed)
        self._wiped = False
        try:
            self.public_key: bytes = bytes(SigningKey(bytes(self._seed)).verify_key)
        except nacl_exceptions.CryptoError as exc:
            self.wipe()
            raise CryptoError("Could not derive public key") from exc
        self._account_id = derive_account_id(self.public_key)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def generate(cls) -> KeyMaterial:
        """Create a fresh key pair from the libsodium CSPRNG."""
        try:
            signing_key = SigningKey.generate()
        except (nacl_exceptions.CryptoError, OSError) as exc:
            raise CryptoError("Secure random source unavailable") from exc
        return cls(bytes(signing_key))

    @classmethod
    def from_private_key_hex(cls, private_key: str) -> KeyMaterial:
        """Load a key pair from a 0x-prefixed (or bare) 32-byte hex seed."""
        try:
            seed = bytes.fromhex(_strip_hex(private_key))
        except ValueError as exc:
            raise CryptoError("Private key is not valid hex") from exc
        return cls(seed)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def account_id(self) -> str:
        return self._account_id

    def sign(self, message: bytes) -> bytes:
        """Sign ``message`` and return the 64-byte detached signature."""
        if self.is_wiped:
            raise CryptoError("Key material has been wiped")
        try:
            return SigningKey(bytes(self._seed)).sign(message).signature
        except nacl_exceptions.CryptoError as exc:
            raise CryptoError("Signing failed") from exc

    def private_key_hex(self) -> str:
        """Export the seed for the wallet file writer. Never log the result."""
        if self.is_wiped:
            raise CryptoError("Key material has been wiped")
        return "0x" + self._seed.hex()

    # ------------------------------------------------------------------
    # Secret handling
    # ------------------------------------------------------------------

    @property
    def is_wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        """Overwrite the private seed with zeros."""
        for i in range(len(self._seed)):
            self._seed[i] = 0
        self._wiped = True

    def __enter__(self) -> KeyMaterial:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.wipe()

    def __del__(self) -> None:
        seed = getattr(self, "_seed", None)
        if seed is not None:
            self.wipe()

    def __repr__(self) -> str:
        return f"KeyMaterial(account_id={self._account_id!r}, private_key=<redacted>)"

    __str__ = __repr__
