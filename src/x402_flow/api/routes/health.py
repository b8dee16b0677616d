"""Health check endpoint.

Answers as long as the process is alive, including while draining. A caller
that gets no response within its own timeout treats the facilitator as down.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from x402_flow.api.deps import get_facilitator_service
from x402_flow.schemas.facilitator import HealthResponse
from x402_flow.services.facilitator_service import FacilitatorService

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns liveness, the facilitator account id and start time.",
)
async def health_check(
    service: FacilitatorService = Depends(get_facilitator_service),
) -> HealthResponse:
    return HealthResponse(**service.health())
