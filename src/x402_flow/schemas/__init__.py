"""Pydantic API schemas."""

from x402_flow.schemas.facilitator import (
    ChallengeModel,
    DuplicateNonceResponse,
    ErrorResponse,
    HealthResponse,
    PaymentInstrumentModel,
    SettlementRecordResponse,
    VerifyResponse,
)

__all__ = [
    "ChallengeModel",
    "DuplicateNonceResponse",
    "ErrorResponse",
    "HealthResponse",
    "PaymentInstrumentModel",
    "SettlementRecordResponse",
    "VerifyResponse",
]
