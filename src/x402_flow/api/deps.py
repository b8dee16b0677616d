"""FastAPI dependency injection providers.

The facilitator service lives on ``app.state`` so each application instance
(and each test) owns its own ledger.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from x402_flow.services.facilitator_service import FacilitatorService


def get_facilitator_service(request: Request) -> FacilitatorService:
    """Provide the FacilitatorService bound to this application."""
    return request.app.state.facilitator
