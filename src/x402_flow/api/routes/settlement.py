"""Settlement REST API routes.

Routes:
    POST   /submit           — Verify an instrument and start settling it
    GET    /status/{nonce}   — Current settlement record for a nonce (may contain "/")
    POST   /verify           — Check an instrument without touching the ledger

Rejections for bad signature or insufficient amount are ordinary 200
responses carrying a REJECTED record; only a duplicate nonce is a 409.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from x402_flow.api.deps import get_facilitator_service
from x402_flow.domain.exceptions import MalformedInstrumentError
from x402_flow.domain.models import PaymentInstrument
from x402_flow.logging_config import get_logger
from x402_flow.schemas.facilitator import (
    DuplicateNonceResponse,
    ErrorResponse,
    PaymentInstrumentModel,
    SettlementRecordResponse,
    VerifyResponse,
)
from x402_flow.services.facilitator_service import FacilitatorService

router = APIRouter(tags=["Settlement"])
logger = get_logger(__name__)


def _decode(request: PaymentInstrumentModel) -> PaymentInstrument:
    try:
        return request.to_domain()
    except ValueError as exc:
        raise MalformedInstrumentError(f"Instrument could not be decoded: {exc}") from exc


@router.post(
    "/submit",
    response_model=SettlementRecordResponse,
    summary="Submit a payment instrument",
    responses={
        400: {"model": ErrorResponse},
        409: {"model": DuplicateNonceResponse},
        503: {"model": ErrorResponse},
    },
)
async def submit_instrument(
    request: PaymentInstrumentModel,
    service: FacilitatorService = Depends(get_facilitator_service),
) -> SettlementRecordResponse:
    """Run duplicate, signature and amount checks, then settle in the background."""
    record = await service.submit(_decode(request))
    logger.info("api.submit", nonce=record.instrument_nonce, status=str(record.status))
    return SettlementRecordResponse.model_validate(record)


@router.get(
    "/status/{nonce:path}",
    response_model=SettlementRecordResponse,
    summary="Get settlement status",
    responses={404: {"model": ErrorResponse}},
)
async def settlement_status(
    nonce: str,
    service: FacilitatorService = Depends(get_facilitator_service),
) -> SettlementRecordResponse:
    return SettlementRecordResponse.model_validate(service.status(nonce))


@router.post(
    "/verify",
    response_model=VerifyResponse,
    summary="Verify a payment instrument without settling it",
    responses={400: {"model": ErrorResponse}},
)
async def verify_instrument(
    request: PaymentInstrumentModel,
    service: FacilitatorService = Depends(get_facilitator_service),
) -> VerifyResponse:
    instrument = _decode(request)
    reason = service.verify_only(instrument)
    return VerifyResponse(
        is_valid=reason is None,
        invalid_reason=str(reason) if reason is not None else None,
        payer=instrument.payer_account,
    )
