"""Tests for FacilitatorService — the verify/settle pipeline.

Covers:
    1. Happy path: PENDING -> VERIFIED -> SETTLED with a settlement id.
    2. Verification failures are terminal and never pass through VERIFIED.
    3. Duplicate nonces never settle twice and leave the original untouched.
    4. Backend failures are retryable by re-submitting the same nonce.
    5. Concurrent submissions and graceful, idempotent shutdown.
"""

from __future__ import annotations

import asyncio
import dataclasses

import pytest
from conftest import BlockingBackend, FailingBackend, make_instrument, settle

from x402_flow.crypto.keys import KeyMaterial
from x402_flow.domain.enums import RejectionReason, SettlementStatus
from x402_flow.domain.exceptions import (
    DuplicateNonceError,
    FacilitatorUnavailableError,
    SettlementNotFoundError,
)
from x402_flow.domain.models import PaymentInstrument
from x402_flow.services.facilitator_service import FacilitatorService
from x402_flow.services.settlement_backend import SimulatedSettlementBackend


class TestHealth:
    def test_health_payload(self, service: FacilitatorService, payee: KeyMaterial) -> None:
        health = service.health()
        assert health["status"] == "healthy"
        assert health["account_id"] == payee.account_id()
        assert health["served_since"] == service.served_since


class TestSubmitHappyPath:
    @pytest.mark.asyncio
    async def test_verified_then_settled(
        self, service: FacilitatorService, instrument: PaymentInstrument
    ) -> None:
        record = await service.submit(instrument)
        assert record.status == SettlementStatus.VERIFIED

        await settle(service)
        final = service.status(instrument.nonce)
        assert final.status == SettlementStatus.SETTLED
        assert final.settlement_id
        assert final.settlement_id.startswith("0x") and len(final.settlement_id) == 66
        assert service.ledger.history(instrument.nonce) == ["PENDING", "VERIFIED", "SETTLED"]

    def test_status_unknown_nonce(self, service: FacilitatorService) -> None:
        with pytest.raises(SettlementNotFoundError):
            service.status("never-seen")


class TestVerificationFailures:
    @pytest.mark.asyncio
    async def test_bad_signature(
        self, service: FacilitatorService, instrument: PaymentInstrument
    ) -> None:
        forged = dataclasses.replace(instrument, signature=b"\x00" * 64)
        record = await service.submit(forged)
        assert record.status == SettlementStatus.REJECTED
        assert record.reason == RejectionReason.BAD_SIGNATURE
        assert not record.retryable

    @pytest.mark.asyncio
    async def test_insufficient_amount_never_verified(
        self, service: FacilitatorService, payer: KeyMaterial, payee: KeyMaterial
    ) -> None:
        # Signed honestly for 500 against a 1000 challenge
        honest = make_instrument(payer, payee, "n-low", required=500, amount=500)
        raised = dataclasses.replace(
            honest.challenge, required_amount=1000
        )
        instrument = dataclasses.replace(honest, challenge=raised)

        record = await service.submit(instrument)
        assert record.status == SettlementStatus.REJECTED
        assert record.reason == RejectionReason.INSUFFICIENT_AMOUNT
        assert SettlementStatus.VERIFIED not in service.ledger.history("n-low")

    @pytest.mark.asyncio
    async def test_rejected_nonce_is_exhausted(
        self, service: FacilitatorService, instrument: PaymentInstrument
    ) -> None:
        forged = dataclasses.replace(instrument, signature=b"\x00" * 64)
        await service.submit(forged)
        with pytest.raises(DuplicateNonceError):
            await service.submit(instrument)

    def test_verify_only_does_not_touch_ledger(
        self, service: FacilitatorService, instrument: PaymentInstrument
    ) -> None:
        assert service.verify_only(instrument) is None
        assert len(service.ledger) == 0


class TestDuplicateNonce:
    @pytest.mark.asyncio
    async def test_second_submit_rejected_original_unchanged(
        self, service: FacilitatorService, instrument: PaymentInstrument
    ) -> None:
        await service.submit(instrument)
        await settle(service)
        original = service.status(instrument.nonce)

        with pytest.raises(DuplicateNonceError) as exc_info:
            await service.submit(instrument)

        assert exc_info.value.original == original
        assert service.status(instrument.nonce) == original
        assert service.ledger.history(instrument.nonce) == ["PENDING", "VERIFIED", "SETTLED"]

    @pytest.mark.asyncio
    async def test_duplicate_while_settling(
        self, payee: KeyMaterial, instrument: PaymentInstrument
    ) -> None:
        backend = BlockingBackend()
        service = FacilitatorService(payee.account_id(), backend)
        await service.submit(instrument)

        with pytest.raises(DuplicateNonceError) as exc_info:
            await service.submit(instrument)
        assert exc_info.value.original.status == SettlementStatus.VERIFIED

        backend.release.set()
        await service.close()
        assert backend.calls == [instrument.nonce]

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_settle_once(
        self, payee: KeyMaterial, instrument: PaymentInstrument
    ) -> None:
        backend = SimulatedSettlementBackend()
        service = FacilitatorService(payee.account_id(), backend)

        results = await asyncio.gather(
            *(service.submit(instrument) for _ in range(10)), return_exceptions=True
        )

        accepted = [r for r in results if not isinstance(r, Exception)]
        duplicates = [r for r in results if isinstance(r, DuplicateNonceError)]
        assert len(accepted) == 1
        assert len(duplicates) == 9
        await service.close()
        assert backend.commit_count == 1
        assert service.status(instrument.nonce).status == SettlementStatus.SETTLED

    @pytest.mark.asyncio
    async def test_verify_only_reports_duplicate(
        self, service: FacilitatorService, instrument: PaymentInstrument
    ) -> None:
        await service.submit(instrument)
        await service.close()
        assert service.verify_only(instrument) == RejectionReason.DUPLICATE_NONCE


class TestBackendFailure:
    @pytest.mark.asyncio
    async def test_failure_is_retryable(
        self, payee: KeyMaterial, instrument: PaymentInstrument
    ) -> None:
        service = FacilitatorService(payee.account_id(), FailingBackend(failures=1))

        await service.submit(instrument)
        await settle(service)
        failed = service.status(instrument.nonce)
        assert failed.status == SettlementStatus.REJECTED
        assert failed.retryable
        assert failed.reason.startswith(RejectionReason.SETTLEMENT_FAILED)

        retried = await service.submit(instrument)
        assert retried.status == SettlementStatus.VERIFIED
        assert retried.attempt == 2
        await settle(service)
        assert service.status(instrument.nonce).status == SettlementStatus.SETTLED

    @pytest.mark.asyncio
    async def test_retry_belongs_to_original_payer(
        self, payee: KeyMaterial, instrument: PaymentInstrument
    ) -> None:
        service = FacilitatorService(payee.account_id(), FailingBackend(failures=1))
        with KeyMaterial.generate() as stranger:
            hijack = make_instrument(stranger, payee, instrument.nonce)

        await service.submit(instrument)
        await settle(service)
        assert service.verify_only(hijack) == RejectionReason.DUPLICATE_NONCE
        with pytest.raises(DuplicateNonceError) as exc_info:
            await service.submit(hijack)
        assert exc_info.value.original.payer_account == instrument.payer_account
        assert service.status(instrument.nonce).attempt == 1

        retried = await service.submit(instrument)
        assert retried.attempt == 2
        await settle(service)
        assert service.status(instrument.nonce).payer_account == instrument.payer_account

    @pytest.mark.asyncio
    async def test_unexpected_backend_crash_is_contained(
        self, payee: KeyMaterial, instrument: PaymentInstrument
    ) -> None:
        class CrashingBackend:
            async def commit(self, instrument: PaymentInstrument) -> str:
                raise ZeroDivisionError

        service = FacilitatorService(payee.account_id(), CrashingBackend())
        await service.submit(instrument)
        await service.close()
        record = service.status(instrument.nonce)
        assert record.status == SettlementStatus.REJECTED
        assert record.retryable


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_many_nonces_in_parallel(
        self, service: FacilitatorService, payer: KeyMaterial, payee: KeyMaterial
    ) -> None:
        instruments = [make_instrument(payer, payee, f"n{i}") for i in range(25)]
        records = await asyncio.gather(*(service.submit(i) for i in instruments))
        assert all(r.status == SettlementStatus.VERIFIED for r in records)

        await service.close()
        assert all(r.status == SettlementStatus.SETTLED for r in service.ledger.records())
        ids = {r.settlement_id for r in service.ledger.records()}
        assert len(ids) == 25

    @pytest.mark.asyncio
    async def test_blocked_nonce_does_not_block_others(
        self, payer: KeyMaterial, payee: KeyMaterial
    ) -> None:
        backend = BlockingBackend()
        service = FacilitatorService(payee.account_id(), backend)

        await service.submit(make_instrument(payer, payee, "slow"))
        await backend.started.wait()
        other = await asyncio.wait_for(
            service.submit(make_instrument(payer, payee, "fast")), timeout=1
        )
        assert other.status == SettlementStatus.VERIFIED

        backend.release.set()
        await service.close()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_close_waits_for_settlement(
        self, payee: KeyMaterial, instrument: PaymentInstrument
    ) -> None:
        backend = BlockingBackend()
        service = FacilitatorService(payee.account_id(), backend)
        await service.submit(instrument)

        closing = asyncio.create_task(service.close())
        await asyncio.sleep(0.02)
        assert not closing.done()

        backend.release.set()
        await closing
        assert service.status(instrument.nonce).status == SettlementStatus.SETTLED

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, service: FacilitatorService) -> None:
        await service.close()
        await service.close()
        await asyncio.gather(service.close(), service.close())
        assert not service.is_accepting

    @pytest.mark.asyncio
    async def test_refuses_work_after_close(
        self, service: FacilitatorService, instrument: PaymentInstrument
    ) -> None:
        await service.close()
        with pytest.raises(FacilitatorUnavailableError):
            await service.submit(instrument)
        assert instrument.nonce not in service.ledger

    @pytest.mark.asyncio
    async def test_status_still_served_after_close(
        self, service: FacilitatorService, instrument: PaymentInstrument
    ) -> None:
        await service.submit(instrument)
        await service.close()
        assert service.status(instrument.nonce).status == SettlementStatus.SETTLED
