"""x402-flow: pay-per-request payment flow engine and facilitator service."""

__version__ = "0.1.0"
