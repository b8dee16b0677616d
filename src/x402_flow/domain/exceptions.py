"""Domain exceptions for x402-flow.

These exceptions are framework-agnostic and represent protocol and business
rule violations. The facilitator API layer translates them to HTTP responses
in api/middleware.py; the payment flow engine folds every one of them into a
FlowError before it reaches the caller.

No exception message in this module ever includes private key material or
raw signature bytes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from x402_flow.domain.enums import FlowErrorKind, FlowState
    from x402_flow.domain.models import SettlementRecord


class X402Error(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "X402_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Challenge Parsing Errors ---


class ParseError(X402Error):
    """Base exception for challenge parsing failures."""


class NotAChallengeError(ParseError):
    """Raised when the response is not a 402 Payment Required."""

    def __init__(self, http_status: int) -> None:
        super().__init__(
            message=f"Expected HTTP 402, got {http_status}",
            code="NOT_A_CHALLENGE",
        )
        self.http_status = http_status


class MalformedChallengeError(ParseError):
    """Raised when a 402 response does not carry a usable challenge."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="MALFORMED_CHALLENGE")


# --- Instrument Building Errors ---


class BuildError(X402Error):
    """Base exception for payment instrument construction failures."""


class InsufficientAmountError(BuildError):
    """Raised when the offered amount is below what the challenge requires."""

    def __init__(self, required: int, offered: int) -> None:
        super().__init__(
            message=f"Insufficient amount: required {required}, offered {offered}",
            code="INSUFFICIENT_AMOUNT",
        )
        self.required = required
        self.offered = offered


class AmountOutOfRangeError(BuildError):
    """Raised when the offered amount does not fit an unsigned 64-bit integer."""

    def __init__(self, offered: int) -> None:
        super().__init__(
            message=f"Amount out of range: {offered} is not within [0, 2**64 - 1]",
            code="AMOUNT_OUT_OF_RANGE",
        )
        self.offered = offered


class SignatureSelfCheckError(BuildError):
    """Raised when a freshly built instrument fails its own signature check."""

    def __init__(self) -> None:
        super().__init__(
            message="Instrument signature failed self-verification",
            code="SIGNATURE_SELF_CHECK_FAILED",
        )


# --- Key Material Errors ---


class CryptoError(X402Error):
    """Raised when key generation, loading or signing fails."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="CRYPTO_ERROR")


# --- Facilitator Errors ---


class FacilitatorError(X402Error):
    """Base exception for facilitator-side failures."""


class DuplicateNonceError(FacilitatorError):
    """Raised when an instrument reuses a nonce already present in the ledger.

    Carries the ledger's current record for that nonce so that a client that
    re-sent after a dropped response can recover the original outcome.
    """

    def __init__(self, nonce: str, original: SettlementRecord | None = None) -> None:
        super().__init__(
            message=f"Duplicate nonce: {nonce}",
            code="DUPLICATE_NONCE",
        )
        self.nonce = nonce
        self.original = original


class SettlementNotFoundError(FacilitatorError):
    """Raised when no ledger entry exists for a nonce."""

    def __init__(self, nonce: str) -> None:
        super().__init__(
            message=f"No settlement record for nonce: {nonce}",
            code="SETTLEMENT_NOT_FOUND",
        )
        self.nonce = nonce


class MalformedInstrumentError(FacilitatorError):
    """Raised when a submitted instrument cannot be decoded."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="MALFORMED_INSTRUMENT")


class FacilitatorUnavailableError(FacilitatorError):
    """Raised when the facilitator is draining and refuses new work."""

    def __init__(self, message: str = "Facilitator is shutting down") -> None:
        super().__init__(message=message, code="FACILITATOR_UNAVAILABLE")


class FacilitatorUnreachableError(FacilitatorError):
    """Raised client-side when the facilitator cannot be reached."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="FACILITATOR_UNREACHABLE")


class SettlementBackendError(FacilitatorError):
    """Raised by a settlement backend when the commit step fails."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="SETTLEMENT_BACKEND_ERROR")


# --- State Machine Errors ---


class InvalidStateTransitionError(X402Error):
    """Raised when an attempted state transition is not allowed.

    Example: PENDING -> SETTLED (must go through VERIFIED).
    """

    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted = attempted


# --- Flow Errors ---


class FlowError(X402Error):
    """Terminal failure of a payment flow session.

    Attributes:
        kind: The FlowErrorKind classifying the failure.
        state: The last FlowState the session reached before failing.
        reason: One-line human-readable explanation.
    """

    def __init__(self, kind: FlowErrorKind, state: FlowState, reason: str) -> None:
        super().__init__(message=f"[{state}] {kind}: {reason}", code=str(kind))
        self.kind = kind
        self.state = state
        self.reason = reason
