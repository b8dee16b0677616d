"""Integration tests for the embeddable facilitator server.

These bind a real local port. Skip them with: pytest -m "not integration"
"""

from __future__ import annotations

import socket

import httpx
import pytest
from conftest import BlockingBackend

from x402_flow.crypto.keys import KeyMaterial
from x402_flow.domain.enums import SettlementStatus
from x402_flow.domain.models import PaymentInstrument
from x402_flow.schemas.facilitator import PaymentInstrumentModel
from x402_flow.server import FacilitatorServer
from x402_flow.services.facilitator_service import FacilitatorService

pytestmark = pytest.mark.integration


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _port_is_free(port: int) -> bool:
    with socket.socket() as sock:
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
        return True


class TestFacilitatorServer:
    @pytest.mark.asyncio
    async def test_start_serve_stop(self, service: FacilitatorService) -> None:
        server = FacilitatorServer(service, port=_free_port())
        await server.start()
        try:
            async with httpx.AsyncClient(base_url=server.url) as http:
                response = await http.get("/health")
            assert response.status_code == 200
            assert response.json()["account_id"] == service.account_id
        finally:
            await server.stop()

        assert not server.is_running
        assert _port_is_free(server.port)

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, service: FacilitatorService) -> None:
        server = FacilitatorServer(service, port=_free_port())
        await server.start()
        await server.stop()
        await server.stop()
        assert not service.is_accepting

    @pytest.mark.asyncio
    async def test_stop_drains_settlement(
        self, payee: KeyMaterial, instrument: PaymentInstrument
    ) -> None:
        backend = BlockingBackend()
        service = FacilitatorService(payee.account_id(), backend)
        server = FacilitatorServer(service, port=_free_port())
        await server.start()

        body = PaymentInstrumentModel.from_domain(instrument).model_dump(mode="json")
        async with httpx.AsyncClient(base_url=server.url) as http:
            response = await http.post("/submit", json=body)
        assert response.json()["status"] == "VERIFIED"

        backend.release.set()
        await server.stop()
        assert service.status(instrument.nonce).status == SettlementStatus.SETTLED


class TestShutdownGrace:
    @pytest.mark.parametrize(("grace", "expected"), [(0.5, 1), (2.0, 2), (2.1, 3), (None, None)])
    def test_fractional_grace_rounds_up(
        self, service: FacilitatorService, grace: float | None, expected: int | None
    ) -> None:
        server = FacilitatorServer(service, port=_free_port(), shutdown_grace_seconds=grace)
        assert server._server.config.timeout_graceful_shutdown == expected
