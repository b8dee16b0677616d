"""FastAPI application entry point for the x402 facilitator.

Lifecycle:
    1. Startup: Initialize logging, report the facilitator account.
    2. Running: Serve /health, /submit, /status/{nonce}, /verify.
    3. Shutdown: Drain in-flight submissions and background settlements.

Run with:
    uvicorn --factory x402_flow.main:create_app --host 127.0.0.1 --port 3001
or through the CLI:
    x402-flow facilitator start --port 3001
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI

from x402_flow import __version__
from x402_flow.config import Settings, get_settings
from x402_flow.crypto.keys import KeyMaterial
from x402_flow.crypto.wallet import load_wallet
from x402_flow.logging_config import get_logger, setup_logging
from x402_flow.services.facilitator_service import FacilitatorService
from x402_flow.services.settlement_backend import SimulatedSettlementBackend

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = get_logger(__name__)


def resolve_account_id(
    settings: Settings,
    wallet: str | None = None,
    private_key: str | None = None,
) -> str:
    """Work out which account the facilitator reports as its own.

    Precedence: explicit private key, explicit wallet address, wallet file
    from settings, then a freshly generated ephemeral key. Key material is
    wiped as soon as the account id has been derived; the facilitator never
    signs anything.
    """
    private_key = private_key or settings.facilitator_private_key
    if private_key:
        with KeyMaterial.from_private_key_hex(private_key) as key:
            return key.account_id()

    wallet = wallet or settings.facilitator_wallet
    if wallet:
        return wallet

    if settings.wallet_path:
        key, info = load_wallet(settings.wallet_path)
        with key:
            return info.address

    with KeyMaterial.generate() as key:
        logger.warning("facilitator.ephemeral_account", account_id=key.account_id())
        return key.account_id()


def build_facilitator_service(
    settings: Settings | None = None,
    wallet: str | None = None,
    private_key: str | None = None,
    network: str | None = None,
) -> FacilitatorService:
    """Construct a FacilitatorService with the simulated settlement backend."""
    settings = settings or get_settings()
    network = network or settings.network
    return FacilitatorService(
        account_id=resolve_account_id(settings, wallet=wallet, private_key=private_key),
        backend=SimulatedSettlementBackend(
            delay_seconds=settings.settlement_delay_seconds,
            network=network,
        ),
        network=network,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    if not structlog.is_configured():
        settings = get_settings()
        setup_logging(
            log_level=settings.app_log_level,
            json_logs=not settings.is_development,
        )
    service: FacilitatorService = app.state.facilitator
    logger.info(
        "facilitator.started",
        account_id=service.account_id,
        network=service.network,
    )

    yield

    logger.info("facilitator.shutting_down")
    await service.close()
    logger.info("facilitator.stopped")


def create_app(service: FacilitatorService | None = None) -> FastAPI:
    """Application factory — creates and configures the facilitator app.

    Args:
        service: The FacilitatorService to serve. Built from settings when
            omitted; tests pass their own to control the backend.
    """
    settings = get_settings()

    app = FastAPI(
        title="x402 Facilitator",
        description="Verifies and settles x402 payment instruments.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )
    app.state.facilitator = service or build_facilitator_service(settings)

    # --- Middleware ---
    from x402_flow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from x402_flow.api.routes.health import router as health_router
    from x402_flow.api.routes.settlement import router as settlement_router

    app.include_router(health_router)
    app.include_router(settlement_router)

    return app
