"""Shared test fixtures for the x402-flow test suite.

Provides:
    - Key material for payers and payees (wiped after each test)
    - A ready-made challenge and signed instrument
    - Controllable settlement backends (blocking, failing)
    - An in-process paywalled resource server for httpx.MockTransport
    - Helpers wiring the facilitator app through httpx.ASGITransport
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, field

import httpx
import pytest

from x402_flow.crypto.keys import KeyMaterial
from x402_flow.domain.exceptions import SettlementBackendError
from x402_flow.domain.models import PaymentChallenge, PaymentInstrument
from x402_flow.main import create_app
from x402_flow.orchestration.payment_flow import FlowConfig
from x402_flow.protocol.challenge import challenge_body, encode_challenge
from x402_flow.protocol.instrument import build
from x402_flow.protocol.proof import PAYMENT_SIGNATURE_HEADER, decode_payment_proof
from x402_flow.services.facilitator_service import FacilitatorService
from x402_flow.services.settlement_backend import SimulatedSettlementBackend

FACILITATOR_URL = "http://facilitator.test"
RESOURCE_URL = "http://api.test/data"

# Tight timings so engine tests finish in milliseconds
FAST_CONFIG = FlowConfig(
    resource_timeout=2.0,
    submit_timeout=2.0,
    status_timeout=2.0,
    settlement_deadline=2.0,
    poll_interval=0.01,
    submit_max_attempts=3,
    retry_backoff=0,
    retry_backoff_max=0,
)


# ---------------------------------------------------------------------------
# Key / Protocol Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def payer() -> Iterator[KeyMaterial]:
    with KeyMaterial.generate() as key:
        yield key


@pytest.fixture
def payee() -> Iterator[KeyMaterial]:
    with KeyMaterial.generate() as key:
        yield key


@pytest.fixture
def challenge(payee: KeyMaterial) -> PaymentChallenge:
    return PaymentChallenge(
        recipient_account=payee.account_id(),
        required_amount=1000,
        resource_url=RESOURCE_URL,
        nonce="n1",
        network="testnet",
    )


@pytest.fixture
def instrument(challenge: PaymentChallenge, payer: KeyMaterial) -> PaymentInstrument:
    return build(challenge, payer, 1000)


def make_instrument(
    payer: KeyMaterial, payee: KeyMaterial, nonce: str, required: int = 1000, amount: int = 1000
) -> PaymentInstrument:
    challenge = PaymentChallenge(
        recipient_account=payee.account_id(),
        required_amount=required,
        resource_url=RESOURCE_URL,
        nonce=nonce,
    )
    return build(challenge, payer, amount)


# ---------------------------------------------------------------------------
# Settlement Backends
# ---------------------------------------------------------------------------


class BlockingBackend:
    """Commits only once ``release`` is set; records every call."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.calls: list[str] = []

    async def commit(self, instrument: PaymentInstrument) -> str:
        self.calls.append(instrument.nonce)
        self.started.set()
        await self.release.wait()
        return "0x" + "ab" * 32


class FailingBackend:
    """Fails the first ``failures`` commits, then succeeds."""

    def __init__(self, failures: int = 1) -> None:
        self.failures = failures
        self.calls: list[str] = []

    async def commit(self, instrument: PaymentInstrument) -> str:
        self.calls.append(instrument.nonce)
        if len(self.calls) <= self.failures:
            raise SettlementBackendError("ledger node unavailable")
        return "0x" + "cd" * 32


@pytest.fixture
def service(payee: KeyMaterial) -> FacilitatorService:
    return FacilitatorService(
        account_id=payee.account_id(),
        backend=SimulatedSettlementBackend(),
        network="testnet",
    )


def asgi_client(service: FacilitatorService) -> httpx.AsyncClient:
    """An httpx client talking to the facilitator app in-process."""
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=create_app(service)),
        base_url=FACILITATOR_URL,
    )


async def settle(service: FacilitatorService) -> None:
    """Wait until every background settlement task has finished."""
    for _ in range(200):
        if service.pending_count() == 0:
            return
        await asyncio.sleep(0.005)
    raise AssertionError("settlements did not finish")


# ---------------------------------------------------------------------------
# Resource Server
# ---------------------------------------------------------------------------


@dataclass
class PaywalledResource:
    """A resource server for httpx.MockTransport.

    Issues a 402 challenge (header and body) for unpaid requests and serves
    200 once a PAYMENT-SIGNATURE proof for an issued nonce is attached.
    """

    recipient: str
    price: int = 1000
    nonce_prefix: str = "n"
    always_402: bool = False
    requests: list[httpx.Request] = field(default_factory=list)
    issued: list[str] = field(default_factory=list)

    def challenge_response(self) -> httpx.Response:
        nonce = f"{self.nonce_prefix}{len(self.issued) + 1}"
        self.issued.append(nonce)
        challenge = PaymentChallenge(
            recipient_account=self.recipient,
            required_amount=self.price,
            resource_url=RESOURCE_URL,
            nonce=nonce,
        )
        return httpx.Response(
            402, headers=encode_challenge(challenge), json=challenge_body(challenge)
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        header = request.headers.get(PAYMENT_SIGNATURE_HEADER)
        if header is None or self.always_402:
            return self.challenge_response()
        proof = decode_payment_proof(header)
        if proof.nonce not in self.issued or not proof.settlement_id:
            return self.challenge_response()
        return httpx.Response(200, json={"data": "paid content", "nonce": proof.nonce})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))
