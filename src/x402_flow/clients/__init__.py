"""Clients for services the payment flow talks to."""

from x402_flow.clients.facilitator_client import FacilitatorClient

__all__ = ["FacilitatorClient"]
