"""Embeddable facilitator server.

Wraps uvicorn so the facilitator can be started and stopped from inside an
asyncio program (the CLI, the simulation, integration tests):

    server = FacilitatorServer(service, host="127.0.0.1", port=3001)
    await server.start()
    ...
    await server.stop()   # safe to call any number of times

``stop()`` asks uvicorn to exit: it closes the listening socket, lets open
connections finish their current request, then runs the app's lifespan
shutdown, which drains background settlements via FacilitatorService.close().
"""

from __future__ import annotations

import asyncio
import math
from typing import TYPE_CHECKING

import uvicorn

from x402_flow.logging_config import get_logger
from x402_flow.main import create_app

if TYPE_CHECKING:
    from x402_flow.services.facilitator_service import FacilitatorService

logger = get_logger(__name__)


class FacilitatorServer:
    """A FacilitatorService bound to a local port."""

    def __init__(
        self,
        service: FacilitatorService,
        host: str = "127.0.0.1",
        port: int = 3001,
        shutdown_grace_seconds: float | None = None,
    ) -> None:
        self.service = service
        self.host = host
        self.port = port
        config = uvicorn.Config(
            create_app(service),
            host=host,
            port=port,
            lifespan="on",
            log_config=None,
            timeout_graceful_shutdown=(
                math.ceil(shutdown_grace_seconds) if shutdown_grace_seconds else None
            ),
        )
        self._server = uvicorn.Server(config)
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Bind the port and begin serving; returns once the server is up."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._server.serve(), name="facilitator-server")
        while not self._server.started:
            if self._task.done():
                # serve() returned early: bind failed
                self._task.result()
                raise OSError(f"Facilitator could not bind {self.host}:{self.port}")
            await asyncio.sleep(0.01)
        logger.info("facilitator.listening", url=self.url)

    async def serve_forever(self) -> None:
        """Serve until stopped (or until uvicorn handles SIGINT/SIGTERM)."""
        await self.start()
        if self._task is not None:
            await self._task
        await self.service.close()

    async def stop(self) -> None:
        """Stop accepting, drain in-flight work, release the port. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._server.should_exit = True
            await self._task
        await self.service.close()
        logger.info("facilitator.released", url=self.url)
