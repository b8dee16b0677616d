"""Settlement backends — the commit step behind the facilitator.

For MVP: provides a simulated backend that fabricates transaction hashes so
the full verify/settle pipeline can run without a chain. A real backend only
has to satisfy domain.settlement_protocol.SettlementBackend.

The simulated hash format ("0x" + 64 hex chars) carries no meaning.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING

from x402_flow.logging_config import get_logger

if TYPE_CHECKING:
    from x402_flow.domain.models import PaymentInstrument

logger = get_logger(__name__)


class SimulatedSettlementBackend:
    """Commits instruments by recording a fake transaction hash per nonce."""

    def __init__(self, delay_seconds: float = 0.0, network: str = "testnet") -> None:
        """Initialize the simulated backend.

        Args:
            delay_seconds: Artificial latency of each commit, to mimic waiting
                for chain confirmation.
            network: Network name reported in log lines.
        """
        self._delay_seconds = delay_seconds
        self._network = network
        self._committed: dict[str, str] = {}

    async def commit(self, instrument: PaymentInstrument) -> str:
        """Return the settlement id for ``instrument``, creating it once."""
        existing = self._committed.get(instrument.nonce)
        if existing is not None:
            logger.info("settlement.already_committed", nonce=instrument.nonce, tx_hash=existing)
            return existing

        if self._delay_seconds > 0:
            await asyncio.sleep(self._delay_seconds)

        tx_hash = "0x" + uuid.uuid4().hex + uuid.uuid4().hex
        # A concurrent commit for the same nonce may have landed during the sleep
        tx_hash = self._committed.setdefault(instrument.nonce, tx_hash)
        logger.info(
            "settlement.simulated",
            nonce=instrument.nonce,
            tx_hash=tx_hash,
            amount=instrument.amount,
            from_account=instrument.payer_account,
            to_account=instrument.challenge.recipient_account,
            network=self._network,
        )
        return tx_hash

    @property
    def commit_count(self) -> int:
        """Number of distinct nonces committed so far."""
        return len(self._committed)
