"""Settlement and payment-flow state machine guards.

Uses python-statemachine to enforce legal state transitions at the domain
level. Neither the facilitator ledger nor the client engine changes a status
field directly: both fire a named event on a machine instantiated at the
current status and take the resulting state. An illegal move (for example
PENDING -> SETTLED, or a second 402 while SETTLING) raises
TransitionNotAllowed instead of falling through silently.

Settlement transition table (one record per nonce):
    PENDING   -> VERIFIED   (mark_verified)
    PENDING   -> REJECTED   (mark_rejected)
    VERIFIED  -> SETTLED    (mark_settled)
    VERIFIED  -> REJECTED   (mark_rejected)

Flow transition table (one session):
    REQUESTING          -> CHALLENGE_RECEIVED  (challenge_received)
    REQUESTING          -> COMPLETED           (no_payment_needed)
    CHALLENGE_RECEIVED  -> INSTRUMENT_BUILT    (instrument_built)
    INSTRUMENT_BUILT    -> SUBMITTED           (instrument_submitted)
    SUBMITTED           -> SETTLING            (settlement_started)
    SETTLING            -> COMPLETED           (resource_delivered)
    any non-final       -> FAILED              (flow_failed)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class _GuardMixin:
    """Shared helpers for machines that are rebuilt from a stored status."""

    def _check_status(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )

    @property
    def status(self) -> str:
        """Return the current state value as a string."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


class SettlementStateMachine(_GuardMixin, StateMachine):
    """Guards the lifecycle of one settlement record.

    Usage:
        sm = SettlementStateMachine(current_status="PENDING")
        sm.mark_verified()  # transitions to VERIFIED
    """

    # --- States ---
    PENDING = State("PENDING", initial=True)
    VERIFIED = State("VERIFIED")
    SETTLED = State("SETTLED", final=True)
    REJECTED = State("REJECTED", final=True)

    # --- Events / Transitions ---
    mark_verified = PENDING.to(VERIFIED)
    mark_settled = VERIFIED.to(SETTLED)
    mark_rejected = PENDING.to(REJECTED) | VERIFIED.to(REJECTED)

    def __init__(self, current_status: str = "PENDING") -> None:
        self._check_status(current_status)
        super().__init__(start_value=current_status)


class FlowStateMachine(_GuardMixin, StateMachine):
    """Guards the client-side payment flow of one session."""

    # --- States ---
    REQUESTING = State("REQUESTING", initial=True)
    CHALLENGE_RECEIVED = State("CHALLENGE_RECEIVED")
    INSTRUMENT_BUILT = State("INSTRUMENT_BUILT")
    SUBMITTED = State("SUBMITTED")
    SETTLING = State("SETTLING")
    COMPLETED = State("COMPLETED", final=True)
    FAILED = State("FAILED", final=True)

    # --- Success path ---
    challenge_received = REQUESTING.to(CHALLENGE_RECEIVED)
    no_payment_needed = REQUESTING.to(COMPLETED)
    instrument_built = CHALLENGE_RECEIVED.to(INSTRUMENT_BUILT)
    instrument_submitted = INSTRUMENT_BUILT.to(SUBMITTED)
    settlement_started = SUBMITTED.to(SETTLING)
    resource_delivered = SETTLING.to(COMPLETED)

    # --- Failure from anywhere ---
    flow_failed = (
        REQUESTING.to(FAILED)
        | CHALLENGE_RECEIVED.to(FAILED)
        | INSTRUMENT_BUILT.to(FAILED)
        | SUBMITTED.to(FAILED)
        | SETTLING.to(FAILED)
    )

    def __init__(self, current_status: str = "REQUESTING") -> None:
        self._check_status(current_status)
        super().__init__(start_value=current_status)


def validate_transition(current_status: str, event_name: str) -> str:
    """Validate a settlement transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns the
    resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = SettlementStateMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
