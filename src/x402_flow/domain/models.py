"""Core value objects for the x402 payment flow.

Frozen dataclasses shared by the client engine and the facilitator. They
carry no framework dependencies; the pydantic wire models in schemas/ convert
to and from these.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime

from x402_flow.domain.enums import FlowState, SettlementStatus

U64_MAX = 2**64 - 1
MAX_NONCE_LENGTH = 256


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class PaymentChallenge:
    """What a 402 response asks the client to pay.

    Attributes:
        recipient_account: Account id the payment is addressed to (payTo).
        required_amount: Amount in the smallest currency unit.
        resource_url: Identity of the resource being paid for.
        nonce: Server-issued opaque value, unique per challenge.
        scheme: x402 payment scheme name, carried through untouched.
        network: Network the payee expects settlement on.
        asset: Asset identifier the amount is denominated in.
    """

    recipient_account: str
    required_amount: int
    resource_url: str
    nonce: str
    scheme: str = "exact"
    network: str = ""
    asset: str = ""


@dataclass(frozen=True)
class PaymentInstrument:
    """A signed payment built against exactly one challenge nonce."""

    challenge: PaymentChallenge
    payer_account: str
    payer_public_key: bytes
    amount: int
    signature: bytes
    created_at: datetime = field(default_factory=utcnow)

    @property
    def nonce(self) -> str:
        return self.challenge.nonce

    def __repr__(self) -> str:
        return (
            f"PaymentInstrument(nonce={self.nonce!r}, payer={self.payer_account!r}, "
            f"amount={self.amount})"
        )


@dataclass(frozen=True)
class SettlementRecord:
    """The facilitator's view of one instrument, keyed by nonce.

    Records are immutable: every transition produces a new record via
    ``with_status`` and the ledger swaps it in.
    """

    instrument_nonce: str
    status: SettlementStatus
    payer_account: str = ""
    amount: int = 0
    settlement_id: str | None = None
    reason: str | None = None
    retryable: bool = False
    attempt: int = 1
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def with_status(self, status: SettlementStatus, **changes: object) -> SettlementRecord:
        """Return a copy moved to ``status`` with the given field changes."""
        return dataclasses.replace(self, status=status, updated_at=utcnow(), **changes)


@dataclass
class FlowSession:
    """Mutable client-side bookkeeping for one payment flow run.

    Owned exclusively by the engine and dropped once the outcome is reported.
    """

    session_id: str
    resource_url: str
    amount_requested: int
    state: FlowState = FlowState.REQUESTING
    attempt_count: int = 0
    last_error: str | None = None
    challenge: PaymentChallenge | None = None
    instrument: PaymentInstrument | None = None
    settlement: SettlementRecord | None = None
    started_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class FlowOutcome:
    """Result of a session that reached COMPLETED."""

    session_id: str
    resource_url: str
    status_code: int
    body: bytes
    elapsed_ms: float
    paid: bool = False
    nonce: str | None = None
    settlement_id: str | None = None
    payer_account: str | None = None
    amount: int = 0
    facilitator_calls: int = 0
    state: FlowState = FlowState.COMPLETED
