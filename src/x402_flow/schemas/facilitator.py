"""Pydantic schemas for the Facilitator API.

These schemas define the request/response shapes of the facilitator's REST
contract. They are separate from the domain dataclasses to keep the wire
format (hex strings, ISO timestamps) out of the protocol logic; the
``to_domain`` / ``from_domain`` helpers are the only crossing points.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from x402_flow.domain.enums import SettlementStatus
from x402_flow.domain.models import (
    MAX_NONCE_LENGTH,
    U64_MAX,
    PaymentChallenge,
    PaymentInstrument,
    SettlementRecord,
)


def _hex_to_bytes(value: str) -> bytes:
    text = value[2:] if value.lower().startswith("0x") else value
    return bytes.fromhex(text)


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class ChallengeModel(BaseModel):
    """The challenge an instrument was built against."""

    recipient_account: str = Field(..., min_length=1, examples=["0x9f1c…"])
    required_amount: int = Field(..., ge=0, le=U64_MAX, examples=[1000])
    resource_url: str = Field(..., min_length=1, examples=["https://api.example.com/data"])
    nonce: str = Field(..., min_length=1, max_length=MAX_NONCE_LENGTH, examples=["n1"])
    scheme: str = "exact"
    network: str = ""
    asset: str = ""

    def to_domain(self) -> PaymentChallenge:
        return PaymentChallenge(**self.model_dump())

    @classmethod
    def from_domain(cls, challenge: PaymentChallenge) -> ChallengeModel:
        return cls(
            recipient_account=challenge.recipient_account,
            required_amount=challenge.required_amount,
            resource_url=challenge.resource_url,
            nonce=challenge.nonce,
            scheme=challenge.scheme,
            network=challenge.network,
            asset=challenge.asset,
        )


class PaymentInstrumentModel(BaseModel):
    """Request body for POST /submit and POST /verify."""

    challenge: ChallengeModel
    payer_account: str = Field(..., min_length=1)
    public_key: str = Field(
        ...,
        description="Hex-encoded Ed25519 public key of the payer (0x-prefixed)",
    )
    amount: int = Field(..., ge=0, le=U64_MAX)
    signature: str = Field(..., description="Hex-encoded detached Ed25519 signature")
    created_at: datetime

    @field_validator("public_key", "signature")
    @classmethod
    def _must_be_hex(cls, value: str) -> str:
        try:
            _hex_to_bytes(value)
        except ValueError as exc:
            raise ValueError("must be hex-encoded") from exc
        return value

    def to_domain(self) -> PaymentInstrument:
        return PaymentInstrument(
            challenge=self.challenge.to_domain(),
            payer_account=self.payer_account,
            payer_public_key=_hex_to_bytes(self.public_key),
            amount=self.amount,
            signature=_hex_to_bytes(self.signature),
            created_at=self.created_at,
        )

    @classmethod
    def from_domain(cls, instrument: PaymentInstrument) -> PaymentInstrumentModel:
        return cls(
            challenge=ChallengeModel.from_domain(instrument.challenge),
            payer_account=instrument.payer_account,
            public_key="0x" + instrument.payer_public_key.hex(),
            amount=instrument.amount,
            signature="0x" + instrument.signature.hex(),
            created_at=instrument.created_at,
        )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class SettlementRecordResponse(BaseModel):
    """Response schema for a ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    instrument_nonce: str
    status: SettlementStatus
    payer_account: str = ""
    amount: int = 0
    settlement_id: str | None = None
    reason: str | None = None
    retryable: bool = False
    attempt: int = 1
    updated_at: datetime

    def to_domain(self) -> SettlementRecord:
        return SettlementRecord(**self.model_dump())


class DuplicateNonceResponse(BaseModel):
    """409 body: the rejection of this submission plus the untouched original."""

    error: str = "DUPLICATE_NONCE"
    message: str
    record: SettlementRecordResponse
    original: SettlementRecordResponse | None = None


class VerifyResponse(BaseModel):
    """Result of a check-only POST /verify."""

    is_valid: bool
    invalid_reason: str | None = None
    payer: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    account_id: str
    served_since: datetime
    network: str = ""
    version: str = "0.1.0"


class ErrorResponse(BaseModel):
    """Generic error envelope produced by the middleware."""

    error: str
    message: str
