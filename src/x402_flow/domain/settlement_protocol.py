"""Settlement Backend Protocol.

Defines the interface for the commit step of the facilitator pipeline: the
collaborator that actually moves funds (a chain, an internal ledger, a test
double). This is a Protocol (structural subtyping) so concrete backends don't
need to inherit from a base class, they just need to match the shape.

The domain layer has ZERO imports from any chain SDK or network client.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from x402_flow.domain.models import PaymentInstrument


@runtime_checkable
class SettlementBackend(Protocol):
    """Protocol that all settlement backends must satisfy.

    Concrete implementations:
        - services/settlement_backend.py  (SimulatedSettlementBackend)
    """

    async def commit(self, instrument: PaymentInstrument) -> str:
        """Commit a verified instrument and return its settlement id.

        Must be idempotent by nonce: committing the same nonce twice returns
        the same settlement id and moves funds at most once.

        Raises:
            SettlementBackendError: If the commit could not be performed.
                The facilitator treats this as retryable.
        """
        ...
