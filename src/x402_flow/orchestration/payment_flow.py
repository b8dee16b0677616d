"""Payment Flow Engine — drives one x402 request from first GET to paid body.

Each ``run`` is a session that walks the FlowStateMachine:

    REQUESTING -> CHALLENGE_RECEIVED -> INSTRUMENT_BUILT -> SUBMITTED
               -> SETTLING -> COMPLETED

A non-402 first response goes straight to COMPLETED. Any failure fires
``flow_failed`` and surfaces as a FlowError carrying the last state reached.
Illegal moves (a second 402 after settlement) are rejected by the state
machine and reported as protocol violations.

Usage:
    from x402_flow.orchestration.payment_flow import PaymentFlowEngine

    async with PaymentFlowEngine("http://localhost:3001") as engine:
        with KeyMaterial.generate() as payer:
            outcome = await engine.run("https://api.example.com/data", 1000, payer)

Sessions share nothing but the HTTP clients, so many may run concurrently on
one engine. Cancellation is cooperative: set the ``cancel`` event and the
session stops at the next step boundary or poll. The facilitator's record
is left to finish on its own.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx
from statemachine.exceptions import TransitionNotAllowed

from x402_flow.clients.facilitator_client import FacilitatorClient
from x402_flow.domain.enums import FlowErrorKind, FlowState, SettlementStatus
from x402_flow.domain.exceptions import (
    BuildError,
    CryptoError,
    DuplicateNonceError,
    FacilitatorError,
    FacilitatorUnreachableError,
    FlowError,
    InsufficientAmountError,
    ParseError,
    SettlementNotFoundError,
)
from x402_flow.domain.models import FlowOutcome, FlowSession
from x402_flow.domain.state_machine import FlowStateMachine
from x402_flow.logging_config import get_logger
from x402_flow.protocol import challenge as challenge_codec
from x402_flow.protocol import instrument as instrument_builder
from x402_flow.protocol.proof import PaymentProof, encode_payment_proof

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from x402_flow.config import Settings
    from x402_flow.crypto.keys import KeyMaterial
    from x402_flow.domain.models import SettlementRecord

logger = get_logger(__name__)


@dataclass(frozen=True)
class FlowConfig:
    """Timeouts and retry policy for the engine, in seconds."""

    resource_timeout: float = 10.0
    submit_timeout: float = 10.0
    status_timeout: float = 5.0
    settlement_deadline: float = 30.0
    poll_interval: float = 0.5
    submit_max_attempts: int = 3
    retry_backoff: float = 0.5
    retry_backoff_max: float = 4.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> FlowConfig:
        if settings is None:
            from x402_flow.config import get_settings

            settings = get_settings()
        return cls(
            resource_timeout=settings.resource_timeout_seconds,
            submit_timeout=settings.submit_timeout_seconds,
            status_timeout=settings.status_timeout_seconds,
            settlement_deadline=settings.settlement_deadline_seconds,
            poll_interval=settings.poll_interval_seconds,
            submit_max_attempts=settings.submit_max_attempts,
            retry_backoff=settings.retry_backoff_seconds,
            retry_backoff_max=settings.retry_backoff_max_seconds,
        )

    def facilitator_client(
        self, base_url: str, client: httpx.AsyncClient | None = None
    ) -> FacilitatorClient:
        return FacilitatorClient(
            base_url,
            client=client,
            submit_timeout=self.submit_timeout,
            status_timeout=self.status_timeout,
            max_attempts=self.submit_max_attempts,
            backoff=self.retry_backoff,
            backoff_max=self.retry_backoff_max,
        )


@dataclass
class _Run:
    """Per-session working set; never shared between sessions."""

    session: FlowSession
    machine: FlowStateMachine
    facilitator: FacilitatorClient
    log: BoundLogger
    cancel: asyncio.Event | None
    started: float = field(default_factory=time.perf_counter)
    facilitator_calls: int = 0

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


class PaymentFlowEngine:
    """Runs x402 payment sessions against one facilitator."""

    def __init__(
        self,
        facilitator: FacilitatorClient | str,
        resource_client: httpx.AsyncClient | None = None,
        config: FlowConfig | None = None,
    ) -> None:
        self.config = config or FlowConfig()
        if isinstance(facilitator, str):
            facilitator = self.config.facilitator_client(facilitator)
            self._owns_facilitator = True
        else:
            self._owns_facilitator = False
        self.facilitator = facilitator
        self._owns_resource_client = resource_client is None
        self._resource_client = resource_client or httpx.AsyncClient(follow_redirects=True)
        self._sessions: dict[str, FlowSession] = {}

    async def __aenter__(self) -> PaymentFlowEngine:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_resource_client:
            await self._resource_client.aclose()
        if self._owns_facilitator:
            await self.facilitator.aclose()

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        resource_url: str,
        amount: int,
        payer: KeyMaterial,
        facilitator_endpoint: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> FlowOutcome:
        """Fetch ``resource_url``, paying up to ``amount`` if challenged.

        Args:
            resource_url: The resource to request.
            amount: Amount the caller is willing to pay, smallest unit.
            payer: Key material that signs the instrument. Not wiped here;
                the caller owns its scope.
            facilitator_endpoint: Use this facilitator for this session only
                instead of the engine's own.
            cancel: Set to abandon the session at the next step boundary.

        Returns:
            The FlowOutcome of a COMPLETED session.

        Raises:
            FlowError: For every failed session, with the last state reached.
        """
        session = FlowSession(
            session_id=uuid.uuid4().hex,
            resource_url=resource_url,
            amount_requested=amount,
        )
        facilitator = self.facilitator
        if facilitator_endpoint is not None:
            facilitator = self.config.facilitator_client(facilitator_endpoint)

        run = _Run(
            session=session,
            machine=FlowStateMachine(),
            facilitator=facilitator,
            log=logger.bind(session_id=session.session_id),
            cancel=cancel,
        )
        self._sessions[session.session_id] = session
        run.log.info("flow.started", resource_url=resource_url, amount=amount)
        try:
            outcome = await self._drive(run, payer)
        except FlowError as exc:
            run.log.warning(
                "flow.failed",
                kind=str(exc.kind),
                state=str(exc.state),
                reason=exc.reason,
                elapsed_ms=round(run.elapsed_ms, 1),
            )
            raise
        finally:
            del self._sessions[session.session_id]
            if facilitator is not self.facilitator:
                await facilitator.aclose()

        run.log.info(
            "flow.completed",
            status_code=outcome.status_code,
            paid=outcome.paid,
            settlement_id=outcome.settlement_id,
            elapsed_ms=round(outcome.elapsed_ms, 1),
        )
        return outcome

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _drive(self, run: _Run, payer: KeyMaterial) -> FlowOutcome:
        session = run.session

        # 1. Request the resource
        self._check_cancelled(run)
        response = await self._fetch(run)
        if response.status_code != 402:
            self._advance(run, "no_payment_needed")
            return self._outcome(run, response)

        # 2. Parse the challenge
        self._advance(run, "challenge_received")
        try:
            challenge = challenge_codec.parse(
                response.status_code, response.headers, response.content
            )
        except ParseError as exc:
            raise self._fail(run, FlowErrorKind.PROTOCOL_VIOLATION, exc.message) from exc
        session.challenge = challenge
        run.log.info(
            "flow.challenge",
            nonce=challenge.nonce,
            required_amount=challenge.required_amount,
            recipient=challenge.recipient_account,
        )

        # 3. Build and sign the instrument
        self._check_cancelled(run)
        try:
            instrument = instrument_builder.build(challenge, payer, session.amount_requested)
        except InsufficientAmountError as exc:
            raise self._fail(run, FlowErrorKind.AMOUNT_TOO_LOW, exc.message) from exc
        except (BuildError, CryptoError) as exc:
            raise self._fail(run, FlowErrorKind.PROTOCOL_VIOLATION, exc.message) from exc
        session.instrument = instrument
        self._advance(run, "instrument_built")

        # 4. Submit to the facilitator
        self._check_cancelled(run)
        record = await self._submit(run)
        self._advance(run, "instrument_submitted")
        if record.status is SettlementStatus.REJECTED:
            raise self._fail(
                run, FlowErrorKind.PAYMENT_REJECTED, record.reason or "rejected"
            )

        # 5. Wait for settlement
        self._advance(run, "settlement_started")
        record = await self._await_settlement(run, record)
        if record.status is SettlementStatus.REJECTED:
            raise self._fail(
                run, FlowErrorKind.PAYMENT_REJECTED, record.reason or "rejected"
            )

        # 6. Retry with proof of payment
        self._check_cancelled(run)
        proof = PaymentProof(
            nonce=instrument.nonce,
            settlement_id=record.settlement_id or "",
            payer=instrument.payer_account,
        )
        response = await self._fetch(run, headers=encode_payment_proof(proof))
        if response.status_code == 402:
            # SETTLING -> CHALLENGE_RECEIVED is not a legal move
            self._advance(run, "challenge_received")
        self._advance(run, "resource_delivered")
        return self._outcome(run, response)

    async def _fetch(self, run: _Run, headers: dict[str, str] | None = None) -> httpx.Response:
        session = run.session
        session.attempt_count += 1
        timeout = self.config.resource_timeout
        try:
            async with asyncio.timeout(timeout):
                response = await self._resource_client.get(
                    session.resource_url, headers=headers, timeout=timeout
                )
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise self._fail(
                run,
                FlowErrorKind.RESOURCE_TIMEOUT,
                f"resource did not answer within {timeout}s",
            ) from exc
        except httpx.HTTPError as exc:
            raise self._fail(
                run,
                FlowErrorKind.RESOURCE_UNREACHABLE,
                f"resource request failed: {exc.__class__.__name__}",
            ) from exc
        run.log.info(
            "flow.resource_response",
            status_code=response.status_code,
            attempt=session.attempt_count,
        )
        return response

    async def _submit(self, run: _Run) -> SettlementRecord:
        instrument = run.session.instrument
        assert instrument is not None
        before = run.facilitator.call_count
        try:
            record = await run.facilitator.submit(instrument)
        except FacilitatorUnreachableError as exc:
            raise self._fail(run, FlowErrorKind.FACILITATOR_UNREACHABLE, exc.message) from exc
        except DuplicateNonceError as exc:
            raise self._fail(run, FlowErrorKind.PAYMENT_REJECTED, "duplicate nonce") from exc
        except FacilitatorError as exc:
            raise self._fail(run, FlowErrorKind.PROTOCOL_VIOLATION, exc.message) from exc
        finally:
            run.facilitator_calls += run.facilitator.call_count - before
        run.session.settlement = record
        run.log.info("flow.submitted", nonce=record.instrument_nonce, status=str(record.status))
        return record

    async def _await_settlement(self, run: _Run, record: SettlementRecord) -> SettlementRecord:
        """Poll until the record is terminal or the settlement deadline passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.settlement_deadline
        nonce = record.instrument_nonce

        while not record.is_terminal:
            self._check_cancelled(run)
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise self._settlement_timeout(run, record)
            record = await self._poll(run, nonce, remaining)
            if record.is_terminal:
                break
            remaining = deadline - loop.time()
            await self._pause(run, min(self.config.poll_interval, max(remaining, 0)))
        return record

    async def _poll(self, run: _Run, nonce: str, remaining: float) -> SettlementRecord:
        before = run.facilitator.call_count
        try:
            async with asyncio.timeout(remaining):
                record = await run.facilitator.status(nonce)
        except TimeoutError as exc:
            raise self._settlement_timeout(run, run.session.settlement) from exc
        except FacilitatorUnreachableError as exc:
            raise self._fail(run, FlowErrorKind.FACILITATOR_UNREACHABLE, exc.message) from exc
        except SettlementNotFoundError as exc:
            raise self._fail(
                run, FlowErrorKind.PROTOCOL_VIOLATION, f"facilitator lost nonce {nonce}"
            ) from exc
        except FacilitatorError as exc:
            raise self._fail(run, FlowErrorKind.PROTOCOL_VIOLATION, exc.message) from exc
        finally:
            run.facilitator_calls += run.facilitator.call_count - before
        run.session.settlement = record
        run.log.debug("flow.poll", nonce=nonce, status=str(record.status))
        return record

    async def _pause(self, run: _Run, seconds: float) -> None:
        """Sleep between polls, waking early if the session is cancelled."""
        if run.cancel is None:
            await asyncio.sleep(seconds)
            return
        try:
            async with asyncio.timeout(seconds):
                await run.cancel.wait()
        except TimeoutError:
            pass

    def _settlement_timeout(self, run: _Run, record: SettlementRecord | None) -> FlowError:
        last = record.status if record is not None else "unknown"
        return self._fail(
            run,
            FlowErrorKind.SETTLEMENT_TIMEOUT,
            f"not settled within {self.config.settlement_deadline}s (last status {last})",
        )

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def _advance(self, run: _Run, event_name: str) -> None:
        before = run.machine.status
        try:
            getattr(run.machine, event_name)()
        except TransitionNotAllowed as exc:
            raise self._fail(
                run,
                FlowErrorKind.PROTOCOL_VIOLATION,
                f"unexpected {event_name.replace('_', ' ')} while {before}",
            ) from exc
        run.session.state = FlowState(run.machine.status)
        run.log.debug("flow.state", from_state=before, to_state=run.machine.status)

    def _check_cancelled(self, run: _Run) -> None:
        if run.cancel is not None and run.cancel.is_set():
            raise self._fail(run, FlowErrorKind.CANCELLED, "cancelled by caller")

    def _fail(self, run: _Run, kind: FlowErrorKind, reason: str) -> FlowError:
        """Move the session to FAILED and return the error to raise."""
        state = FlowState(run.machine.status)
        if not run.machine.current_state.final:
            run.machine.flow_failed()
        run.session.state = FlowState.FAILED
        run.session.last_error = reason
        return FlowError(kind, state, reason)

    def _outcome(self, run: _Run, response: httpx.Response) -> FlowOutcome:
        session = run.session
        record = session.settlement
        instrument = session.instrument
        return FlowOutcome(
            session_id=session.session_id,
            resource_url=session.resource_url,
            status_code=response.status_code,
            body=response.content,
            elapsed_ms=run.elapsed_ms,
            paid=record is not None and record.status is SettlementStatus.SETTLED,
            nonce=instrument.nonce if instrument is not None else None,
            settlement_id=record.settlement_id if record is not None else None,
            payer_account=instrument.payer_account if instrument is not None else None,
            amount=instrument.amount if instrument is not None else 0,
            facilitator_calls=run.facilitator_calls,
            state=session.state,
        )
