"""Tests for the simulated settlement backend."""

from __future__ import annotations

import asyncio
import re

import pytest

from x402_flow.domain.models import PaymentInstrument
from x402_flow.domain.settlement_protocol import SettlementBackend
from x402_flow.services.settlement_backend import SimulatedSettlementBackend


class TestSimulatedSettlementBackend:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(SimulatedSettlementBackend(), SettlementBackend)

    @pytest.mark.asyncio
    async def test_hash_format(self, instrument: PaymentInstrument) -> None:
        tx_hash = await SimulatedSettlementBackend().commit(instrument)
        assert re.fullmatch(r"0x[0-9a-f]{64}", tx_hash)

    @pytest.mark.asyncio
    async def test_idempotent_by_nonce(self, instrument: PaymentInstrument) -> None:
        backend = SimulatedSettlementBackend()
        first = await backend.commit(instrument)
        second = await backend.commit(instrument)
        assert first == second
        assert backend.commit_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_commits_agree(self, instrument: PaymentInstrument) -> None:
        backend = SimulatedSettlementBackend(delay_seconds=0.01)
        hashes = await asyncio.gather(*(backend.commit(instrument) for _ in range(5)))
        assert len(set(hashes)) == 1
