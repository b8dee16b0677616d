"""Application services — the facilitator's ledger, backends and pipeline."""

from x402_flow.services.facilitator_service import FacilitatorService
from x402_flow.services.ledger import LedgerEntry, SettlementLedger
from x402_flow.services.settlement_backend import SimulatedSettlementBackend

__all__ = [
    "FacilitatorService",
    "LedgerEntry",
    "SettlementLedger",
    "SimulatedSettlementBackend",
]
