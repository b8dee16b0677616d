"""In-memory settlement ledger with per-nonce serialization.

The ledger maps each nonce to the instrument submitted for it, the current
SettlementRecord, and the ordered list of statuses the nonce has passed
through. It is the facilitator's only shared mutable state.

Concurrency model:
    - One asyncio.Lock per nonce, created on first use. Transitions on a nonce
      must happen while holding ``locked(nonce)``; different nonces never
      contend.
    - Readers (``get_record``) take no lock. Records are immutable and the
      entry's reference is swapped in a single assignment.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from x402_flow.domain.enums import SettlementStatus
from x402_flow.domain.exceptions import (
    InvalidStateTransitionError,
    SettlementNotFoundError,
)
from x402_flow.domain.models import SettlementRecord
from x402_flow.domain.state_machine import validate_transition

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from x402_flow.domain.models import PaymentInstrument


@dataclass
class LedgerEntry:
    """Everything the facilitator knows about one nonce."""

    instrument: PaymentInstrument
    record: SettlementRecord
    history: list[SettlementStatus] = field(default_factory=list)

    @property
    def ever_settled(self) -> bool:
        return SettlementStatus.SETTLED in self.history

    @property
    def open_for_retry(self) -> bool:
        """True if a new attempt may be started for this nonce."""
        return (
            self.record.status is SettlementStatus.REJECTED
            and self.record.retryable
            and not self.ever_settled
        )

    def accepts_retry_from(self, payer_account: str) -> bool:
        """True if ``payer_account`` may start a new attempt for this nonce."""
        return self.open_for_retry and payer_account == self.record.payer_account


class SettlementLedger:
    """Arena of settlement records keyed by nonce."""

    def __init__(self) -> None:
        self._entries: dict[str, LedgerEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, nonce: object) -> bool:
        return nonce in self._entries

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def locked(self, nonce: str) -> AsyncIterator[None]:
        """Serialize all work on ``nonce``."""
        # setdefault runs without yielding to the loop, so one lock per nonce
        lock = self._locks.setdefault(nonce, asyncio.Lock())
        async with lock:
            yield

    def _require_lock(self, nonce: str) -> None:
        lock = self._locks.get(nonce)
        if lock is None or not lock.locked():
            raise RuntimeError(f"Ledger mutation on nonce {nonce!r} without holding its lock")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, nonce: str) -> LedgerEntry | None:
        return self._entries.get(nonce)

    def get_record(self, nonce: str) -> SettlementRecord:
        entry = self._entries.get(nonce)
        if entry is None:
            raise SettlementNotFoundError(nonce)
        return entry.record

    def records(self) -> list[SettlementRecord]:
        """Snapshot of the current record for every nonce."""
        return [entry.record for entry in list(self._entries.values())]

    def history(self, nonce: str) -> list[SettlementStatus]:
        entry = self._entries.get(nonce)
        if entry is None:
            raise SettlementNotFoundError(nonce)
        return list(entry.history)

    # ------------------------------------------------------------------
    # Writes (caller holds ``locked(nonce)``)
    # ------------------------------------------------------------------

    def open(self, instrument: PaymentInstrument) -> SettlementRecord:
        """Create a PENDING record for ``instrument``.

        A nonce that already has an entry may only be reopened by the same
        payer, when its last attempt failed in the commit step and it never
        settled.
        """
        nonce = instrument.nonce
        self._require_lock(nonce)
        entry = self._entries.get(nonce)
        attempt = 1
        if entry is not None:
            if not entry.accepts_retry_from(instrument.payer_account):
                raise InvalidStateTransitionError(entry.record.status, SettlementStatus.PENDING)
            attempt = entry.record.attempt + 1

        record = SettlementRecord(
            instrument_nonce=nonce,
            status=SettlementStatus.PENDING,
            payer_account=instrument.payer_account,
            amount=instrument.amount,
            attempt=attempt,
        )
        if entry is None:
            self._entries[nonce] = LedgerEntry(
                instrument=instrument,
                record=record,
                history=[SettlementStatus.PENDING],
            )
        else:
            entry.instrument = instrument
            entry.record = record
            entry.history.append(SettlementStatus.PENDING)
        return record

    def transition(self, nonce: str, event_name: str, **changes: object) -> SettlementRecord:
        """Fire ``event_name`` on the nonce's record and store the result.

        Raises:
            SettlementNotFoundError: If the nonce is unknown.
            InvalidStateTransitionError: If the transition is illegal.
        """
        self._require_lock(nonce)
        entry = self._entries.get(nonce)
        if entry is None:
            raise SettlementNotFoundError(nonce)

        current = entry.record.status
        try:
            new_status = SettlementStatus(validate_transition(current, event_name))
        except (TransitionNotAllowed, ValueError) as err:
            raise InvalidStateTransitionError(current, event_name) from err

        entry.record = entry.record.with_status(new_status, **changes)
        entry.history.append(new_status)
        return entry.record
