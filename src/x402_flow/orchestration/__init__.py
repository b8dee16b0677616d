"""Client-side orchestration of the x402 payment flow."""

from x402_flow.orchestration.payment_flow import FlowConfig, PaymentFlowEngine

__all__ = ["FlowConfig", "PaymentFlowEngine"]
