"""FastAPI middleware for request tracing and error handling.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — catches domain exceptions -> structured JSON errors

Request validation failures are answered with 400 (not FastAPI's default
422): a body that does not decode to a PaymentInstrument is a malformed
instrument as far as the wire contract is concerned.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from x402_flow.domain.enums import RejectionReason, SettlementStatus
from x402_flow.domain.exceptions import (
    DuplicateNonceError,
    FacilitatorUnavailableError,
    MalformedInstrumentError,
    SettlementNotFoundError,
    X402Error,
)
from x402_flow.domain.models import SettlementRecord
from x402_flow.schemas.facilitator import DuplicateNonceResponse, SettlementRecordResponse

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
def duplicate_nonce_response(exc: DuplicateNonceError) -> JSONResponse:
    """409 carrying this submission's rejection and the untouched original."""
    rejection = SettlementRecord(
        instrument_nonce=exc.nonce,
        status=SettlementStatus.REJECTED,
        reason=str(RejectionReason.DUPLICATE_NONCE),
    )
    body = DuplicateNonceResponse(
        message=exc.message,
        record=SettlementRecordResponse.model_validate(rejection),
        original=(
            SettlementRecordResponse.model_validate(exc.original)
            if exc.original is not None
            else None
        ),
    )
    return JSONResponse(status_code=409, content=body.model_dump(mode="json"))


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except SettlementNotFoundError as exc:
            logger.info("settlement.not_found", nonce=exc.nonce)
            return JSONResponse(
                status_code=404,
                content={"error": exc.code, "message": exc.message},
            )
        except DuplicateNonceError as exc:
            logger.warning("settlement.duplicate_nonce", nonce=exc.nonce)
            return duplicate_nonce_response(exc)
        except MalformedInstrumentError as exc:
            logger.warning("instrument.malformed", error=exc.message)
            return JSONResponse(
                status_code=400,
                content={"error": exc.code, "message": exc.message},
            )
        except FacilitatorUnavailableError as exc:
            logger.warning("facilitator.unavailable", error=exc.message)
            return JSONResponse(
                status_code=503,
                content={"error": exc.code, "message": exc.message},
            )
        except X402Error as exc:
            logger.error("domain.error", error=exc.message, code=exc.code)
            return JSONResponse(
                status_code=400,
                content={"error": exc.code, "message": exc.message},
            )
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Answer undecodable request bodies with 400 MALFORMED_INSTRUMENT."""
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    logger.warning("request.invalid", path=request.url.path, fields=fields)
    return JSONResponse(
        status_code=400,
        content={
            "error": "MALFORMED_INSTRUMENT",
            "message": f"Invalid request body: {', '.join(fields) or 'unparseable'}",
        },
    )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware and exception handlers on the application.

    Order matters — middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Error handling (runs second)
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (runs first = outermost)
    app.add_middleware(RequestIDMiddleware)
