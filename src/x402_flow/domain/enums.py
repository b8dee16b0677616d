"""Domain enumerations for x402-flow.

These enums define the canonical states and reasons used throughout the system.
They are framework-agnostic (no FastAPI, no httpx imports).
"""

import enum


class SettlementStatus(enum.StrEnum):
    """Lifecycle states of a settlement record in the facilitator ledger.

    State transitions are enforced by the SettlementStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    SETTLED = "SETTLED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (SettlementStatus.SETTLED, SettlementStatus.REJECTED)


class FlowState(enum.StrEnum):
    """States of one client-side payment flow session."""

    REQUESTING = "REQUESTING"
    CHALLENGE_RECEIVED = "CHALLENGE_RECEIVED"
    INSTRUMENT_BUILT = "INSTRUMENT_BUILT"
    SUBMITTED = "SUBMITTED"
    SETTLING = "SETTLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FlowErrorKind(enum.StrEnum):
    """Why a payment flow session ended in FAILED."""

    PROTOCOL_VIOLATION = "PROTOCOL_VIOLATION"
    AMOUNT_TOO_LOW = "AMOUNT_TOO_LOW"
    FACILITATOR_UNREACHABLE = "FACILITATOR_UNREACHABLE"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"
    SETTLEMENT_TIMEOUT = "SETTLEMENT_TIMEOUT"
    CANCELLED = "CANCELLED"
    RESOURCE_UNREACHABLE = "RESOURCE_UNREACHABLE"
    RESOURCE_TIMEOUT = "RESOURCE_TIMEOUT"


class RejectionReason(enum.StrEnum):
    """Human-readable reasons recorded on REJECTED settlement records."""

    DUPLICATE_NONCE = "duplicate nonce"
    BAD_SIGNATURE = "bad signature"
    INSUFFICIENT_AMOUNT = "insufficient amount"
    SETTLEMENT_FAILED = "settlement failed"
