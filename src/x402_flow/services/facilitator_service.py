"""Facilitator Service — verifies and settles payment instruments.

This is the application layer behind the facilitator's REST routes. It
coordinates:
    - SettlementLedger (per-nonce records and locks)
    - SettlementStateMachine (via ledger transitions)
    - SettlementBackend (the abstract commit step)

Pipeline for one submission (under the nonce lock):
    1. Duplicate nonce            -> DuplicateNonceError (ledger untouched)
    2. Open PENDING record
    3. Signature check            -> REJECTED "bad signature"
    4. Amount check               -> REJECTED "insufficient amount"
    5. VERIFIED, commit scheduled as a tracked background task
    6. Commit ok                  -> SETTLED with settlement_id
       Commit failed              -> REJECTED, retryable
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from x402_flow.domain.enums import RejectionReason
from x402_flow.domain.exceptions import (
    DuplicateNonceError,
    FacilitatorUnavailableError,
    SettlementBackendError,
)
from x402_flow.domain.models import utcnow
from x402_flow.logging_config import get_logger
from x402_flow.protocol.instrument import verify_instrument
from x402_flow.services.ledger import SettlementLedger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from x402_flow.domain.models import PaymentInstrument, SettlementRecord
    from x402_flow.domain.settlement_protocol import SettlementBackend

logger = get_logger(__name__)


class FacilitatorService:
    """Accepts, verifies and settles instruments for one facilitator account."""

    def __init__(
        self,
        account_id: str,
        backend: SettlementBackend,
        ledger: SettlementLedger | None = None,
        network: str = "",
    ) -> None:
        self.account_id = account_id
        self.network = network
        self.served_since = utcnow()
        self._backend = backend
        self._ledger = ledger or SettlementLedger()

        self._accepting = True
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._settlements: set[asyncio.Task[None]] = set()
        self._drain: asyncio.Future[None] | None = None

    @property
    def ledger(self) -> SettlementLedger:
        return self._ledger

    @property
    def is_accepting(self) -> bool:
        return self._accepting

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        """Liveness payload. Answers for as long as the process is up."""
        return {
            "status": "healthy",
            "account_id": self.account_id,
            "served_since": self.served_since,
            "network": self.network,
        }

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def check(self, instrument: PaymentInstrument) -> RejectionReason | None:
        """Run the stateless checks, returning the first failure reason."""
        if not verify_instrument(instrument):
            return RejectionReason.BAD_SIGNATURE
        if instrument.amount < instrument.challenge.required_amount:
            return RejectionReason.INSUFFICIENT_AMOUNT
        return None

    def verify_only(self, instrument: PaymentInstrument) -> RejectionReason | None:
        """Checks a submission would run, without touching the ledger."""
        entry = self._ledger.get(instrument.nonce)
        if entry is not None and not entry.accepts_retry_from(instrument.payer_account):
            return RejectionReason.DUPLICATE_NONCE
        return self.check(instrument)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, instrument: PaymentInstrument) -> SettlementRecord:
        """Verify ``instrument`` and start settling it.

        Returns:
            The record after verification: VERIFIED (commit in progress) or
            REJECTED with a reason.

        Raises:
            DuplicateNonceError: If the nonce already has a ledger entry that
                is not open for retry by this payer. Carries the untouched original
                record.
            FacilitatorUnavailableError: If the service is draining.
        """
        nonce = instrument.nonce
        async with self._track(), self._ledger.locked(nonce):
            entry = self._ledger.get(nonce)
            if entry is not None and not entry.accepts_retry_from(instrument.payer_account):
                logger.warning(
                    "facilitator.submit.duplicate_nonce",
                    nonce=nonce,
                    existing_status=entry.record.status,
                )
                raise DuplicateNonceError(nonce, original=entry.record)

            record = self._ledger.open(instrument)
            logger.info(
                "facilitator.submit.pending",
                nonce=nonce,
                payer=instrument.payer_account,
                amount=instrument.amount,
                attempt=record.attempt,
            )

            reason = self.check(instrument)
            if reason is not None:
                logger.info("facilitator.submit.rejected", nonce=nonce, reason=str(reason))
                return self._ledger.transition(nonce, "mark_rejected", reason=str(reason))

            record = self._ledger.transition(nonce, "mark_verified")
            logger.info("facilitator.submit.verified", nonce=nonce)
            self._schedule_settlement(instrument)
            return record

    def status(self, nonce: str) -> SettlementRecord:
        """Return the current record for ``nonce``.

        Raises:
            SettlementNotFoundError: If the nonce is unknown.
        """
        return self._ledger.get_record(nonce)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _schedule_settlement(self, instrument: PaymentInstrument) -> None:
        task = asyncio.create_task(
            self._settle(instrument),
            name=f"settle-{instrument.nonce}",
        )
        self._settlements.add(task)
        task.add_done_callback(self._settlements.discard)

    async def _settle(self, instrument: PaymentInstrument) -> None:
        nonce = instrument.nonce
        try:
            settlement_id = await self._backend.commit(instrument)
        except SettlementBackendError as exc:
            await self._reject_retryable(nonce, exc.message)
            return
        except Exception:
            logger.exception("facilitator.settle.backend_crashed", nonce=nonce)
            await self._reject_retryable(nonce, "backend error")
            return

        async with self._ledger.locked(nonce):
            self._ledger.transition(nonce, "mark_settled", settlement_id=settlement_id)
        logger.info("facilitator.settle.settled", nonce=nonce, settlement_id=settlement_id)

    async def _reject_retryable(self, nonce: str, detail: str) -> None:
        reason = f"{RejectionReason.SETTLEMENT_FAILED}: {detail}"
        async with self._ledger.locked(nonce):
            self._ledger.transition(nonce, "mark_rejected", reason=reason, retryable=True)
        logger.warning("facilitator.settle.failed", nonce=nonce, reason=reason)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _track(self) -> AsyncIterator[None]:
        """Count an in-flight handler; refuse new work once draining."""
        if not self._accepting:
            raise FacilitatorUnavailableError()
        self._inflight += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

    async def close(self) -> None:
        """Stop accepting submissions and wait for in-flight work to finish.

        Idempotent: later calls wait on the same drain and then return.
        """
        if self._drain is None:
            self._accepting = False
            logger.info(
                "facilitator.draining",
                inflight=self._inflight,
                settlements=len(self._settlements),
            )
            self._drain = asyncio.ensure_future(self._wait_drained())
        await asyncio.shield(self._drain)

    async def _wait_drained(self) -> None:
        await self._idle.wait()
        if self._settlements:
            await asyncio.gather(*list(self._settlements), return_exceptions=True)
        logger.info("facilitator.drained", ledger_size=len(self._ledger))

    def pending_count(self) -> int:
        """Number of nonces whose latest record is not terminal."""
        return sum(1 for record in self._ledger.records() if not record.is_terminal)
