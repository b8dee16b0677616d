"""Domain layer — pure protocol logic with zero framework dependencies."""

from x402_flow.domain.enums import (
    FlowErrorKind,
    FlowState,
    RejectionReason,
    SettlementStatus,
)
from x402_flow.domain.exceptions import (
    BuildError,
    CryptoError,
    FacilitatorError,
    FlowError,
    InvalidStateTransitionError,
    ParseError,
    X402Error,
)
from x402_flow.domain.models import (
    FlowOutcome,
    FlowSession,
    PaymentChallenge,
    PaymentInstrument,
    SettlementRecord,
)
from x402_flow.domain.settlement_protocol import SettlementBackend
from x402_flow.domain.state_machine import (
    FlowStateMachine,
    SettlementStateMachine,
    validate_transition,
)

__all__ = [
    "FlowErrorKind",
    "FlowState",
    "RejectionReason",
    "SettlementStatus",
    "BuildError",
    "CryptoError",
    "FacilitatorError",
    "FlowError",
    "InvalidStateTransitionError",
    "ParseError",
    "X402Error",
    "FlowOutcome",
    "FlowSession",
    "PaymentChallenge",
    "PaymentInstrument",
    "SettlementRecord",
    "SettlementBackend",
    "FlowStateMachine",
    "SettlementStateMachine",
    "validate_transition",
]
