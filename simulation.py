#!/usr/bin/env python3
"""x402 Flow — End-to-End Simulation.

Runs the payment flow against an in-process paywalled resource and the real
facilitator application (no sockets, no chain):

    Scenario A: Free resource
        - Resource answers 200 immediately -> COMPLETED, no facilitator calls

    Scenario B: Paid resource
        - Resource answers 402 asking 1000 for nonce n1
        - Client offers 1000 -> instrument built, submitted, settled
        - Retry with PAYMENT-SIGNATURE proof -> 200, COMPLETED

    Scenario C: Underpayment
        - Resource asks 1000, client offers 500 -> AMOUNT_TOO_LOW before any
          facilitator call

Usage:
    python simulation.py
    python simulation.py --scenario B
"""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import dataclass, field

import httpx

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from x402_flow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from x402_flow.clients.facilitator_client import FacilitatorClient  # noqa: E402
from x402_flow.crypto.keys import KeyMaterial  # noqa: E402
from x402_flow.domain.enums import SettlementStatus  # noqa: E402
from x402_flow.domain.exceptions import FlowError, X402Error  # noqa: E402
from x402_flow.domain.models import PaymentChallenge  # noqa: E402
from x402_flow.main import create_app  # noqa: E402
from x402_flow.orchestration.payment_flow import FlowConfig, PaymentFlowEngine  # noqa: E402
from x402_flow.protocol.challenge import challenge_body, encode_challenge  # noqa: E402
from x402_flow.protocol.proof import PAYMENT_SIGNATURE_HEADER, decode_payment_proof  # noqa: E402
from x402_flow.services.facilitator_service import FacilitatorService  # noqa: E402
from x402_flow.services.settlement_backend import SimulatedSettlementBackend  # noqa: E402

FACILITATOR_URL = "http://facilitator.local"
RESOURCE_URL = "http://api.local/weather"


# ---------------------------------------------------------------------------
# Paywalled resource server
# ---------------------------------------------------------------------------
@dataclass
class PaywalledResource:
    """A resource server that charges ``price`` per request (0 = free)."""

    recipient: str
    price: int
    facilitator: FacilitatorClient
    nonces: list[str] = field(default_factory=list)

    def _challenge(self) -> httpx.Response:
        nonce = f"n{len(self.nonces) + 1}"
        self.nonces.append(nonce)
        challenge = PaymentChallenge(
            recipient_account=self.recipient,
            required_amount=self.price,
            resource_url=RESOURCE_URL,
            nonce=nonce,
            network="testnet",
        )
        logger.info("🟠 RESOURCE: 402 issued", nonce=nonce, price=self.price)
        return httpx.Response(
            402, headers=encode_challenge(challenge), json=challenge_body(challenge)
        )

    async def handle(self, request: httpx.Request) -> httpx.Response:
        if self.price == 0:
            return httpx.Response(200, json={"forecast": "sunny", "paid": False})

        header = request.headers.get(PAYMENT_SIGNATURE_HEADER)
        if header is None:
            return self._challenge()

        try:
            proof = decode_payment_proof(header)
            record = await self.facilitator.status(proof.nonce)
        except X402Error as exc:
            logger.info("🟠 RESOURCE: proof refused", error=exc.message)
            return self._challenge()

        if (
            proof.nonce not in self.nonces
            or record.status is not SettlementStatus.SETTLED
            or record.settlement_id != proof.settlement_id
        ):
            logger.info("🟠 RESOURCE: proof refused", nonce=proof.nonce)
            return self._challenge()

        logger.info("🟠 RESOURCE: paid request served", nonce=proof.nonce)
        return httpx.Response(200, json={"forecast": "sunny", "paid": True})


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------
@dataclass
class Harness:
    service: FacilitatorService
    facilitator_http: httpx.AsyncClient
    payee: str

    def resource(self, price: int) -> PaywalledResource:
        return PaywalledResource(
            recipient=self.payee,
            price=price,
            facilitator=FacilitatorClient(FACILITATOR_URL, client=self.facilitator_http),
        )

    def engine(self, resource: PaywalledResource) -> PaymentFlowEngine:
        config = FlowConfig(settlement_deadline=5.0, poll_interval=0.05, retry_backoff=0.05)
        return PaymentFlowEngine(
            config.facilitator_client(FACILITATOR_URL, client=self.facilitator_http),
            resource_client=httpx.AsyncClient(transport=httpx.MockTransport(resource.handle)),
            config=config,
        )


async def run_session(harness: Harness, price: int, offer: int) -> None:
    resource = harness.resource(price)
    async with harness.engine(resource) as engine:
        with KeyMaterial.generate() as payer:
            print(f"  Payer:  {payer.account_id()}")
            print(f"  Price:  {price}   Offer: {offer}")
            try:
                outcome = await engine.run(RESOURCE_URL, offer, payer)
            except FlowError as exc:
                print(f"  ❌ Failed: {exc}")
                print(f"  Facilitator ledger size: {len(harness.service.ledger)}")
                return

    body = json.loads(outcome.body)
    print(f"  ✅ {outcome.state} (HTTP {outcome.status_code}) in {outcome.elapsed_ms:.0f} ms")
    print(f"  Body: {body}")
    print(f"  Facilitator calls: {outcome.facilitator_calls}")
    if outcome.paid:
        print(f"  Nonce: {outcome.nonce}")
        print(f"  Settlement ID: {outcome.settlement_id[:20]}...")


async def scenario_a_free_resource(harness: Harness) -> None:
    banner("SCENARIO A: Free resource")
    await run_session(harness, price=0, offer=1000)


async def scenario_b_paid_resource(harness: Harness) -> None:
    banner("SCENARIO B: Paid resource")
    await run_session(harness, price=1000, offer=1000)


async def scenario_c_underpayment(harness: Harness) -> None:
    banner("SCENARIO C: Underpayment")
    await run_session(harness, price=1000, offer=500)


SCENARIOS = {
    "A": scenario_a_free_resource,
    "B": scenario_b_paid_resource,
    "C": scenario_c_underpayment,
}


# ===========================================================================
# Main
# ===========================================================================
async def run(selected: list[str]) -> None:
    with KeyMaterial.generate() as facilitator_key:
        account_id = facilitator_key.account_id()

    service = FacilitatorService(
        account_id=account_id,
        backend=SimulatedSettlementBackend(delay_seconds=0.1),
        network="testnet",
    )
    app = create_app(service)
    facilitator_http = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url=FACILITATOR_URL
    )
    harness = Harness(service=service, facilitator_http=facilitator_http, payee=account_id)

    print("\n" + "🚀" * 35)
    print("  x402 FLOW — SIMULATION")
    print(f"  Facilitator account: {account_id}")
    print("🚀" * 35 + "\n")

    try:
        for name in selected:
            await SCENARIOS[name](harness)

        section("Facilitator ledger")
        for record in service.ledger.records():
            history = " -> ".join(service.ledger.history(record.instrument_nonce))
            print(f"  {record.instrument_nonce}: {history}")
    finally:
        await facilitator_http.aclose()
        await service.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="x402 Flow Simulation")
    parser.add_argument(
        "--scenario",
        choices=sorted(SCENARIOS),
        default=None,
        help="Run a specific scenario (A, B or C). Default: run all.",
    )
    args = parser.parse_args()
    asyncio.run(run([args.scenario] if args.scenario else sorted(SCENARIOS)))
