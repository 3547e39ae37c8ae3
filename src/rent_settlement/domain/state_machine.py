"""State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API or the reconciliation engine does, an illegal
transition (e.g., confirmed -> pending) is rejected.

Escrow contract transition table:
    uninitialized -> active     (initialize)
    active        -> settled    (settle)
    active        -> disputed   (dispute)

Payment record transition table:
    pending   -> submitted  (submit_accepted)
    pending   -> failed     (submit_rejected)
    submitted -> confirmed  (finality_confirmed)
    submitted -> failed     (finality_failed)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from rent_settlement.domain.exceptions import InvalidStateTransitionError


class _GuardMixin:
    """Shared helpers for machines that are rebuilt from a persisted status."""

    def _validate_start(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


class EscrowContractStateMachine(_GuardMixin, StateMachine):
    """Guards the on-ledger escrow contract lifecycle.

    Usage:
        sm = EscrowContractStateMachine(current_status="active")
        sm.dispute()
        sm.status  # "disputed"
    """

    uninitialized = State("uninitialized", value="uninitialized", initial=True)
    active = State("active", value="active")
    settled = State("settled", value="settled", final=True)
    disputed = State("disputed", value="disputed", final=True)

    initialize = uninitialized.to(active)
    settle = active.to(settled)
    dispute = active.to(disputed)

    def __init__(self, current_status: str = "uninitialized") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


class PaymentRecordStateMachine(_GuardMixin, StateMachine):
    """Guards the monotonic payment record lifecycle."""

    pending = State("pending", value="pending", initial=True)
    submitted = State("submitted", value="submitted")
    confirmed = State("confirmed", value="confirmed", final=True)
    failed = State("failed", value="failed", final=True)

    submit_accepted = pending.to(submitted)
    submit_rejected = pending.to(failed)
    finality_confirmed = submitted.to(confirmed)
    finality_failed = submitted.to(failed)

    def __init__(self, current_status: str = "pending") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


# (from, to) -> event name on PaymentRecordStateMachine
PAYMENT_TRANSITION_EVENTS: dict[tuple[str, str], str] = {
    ("pending", "submitted"): "submit_accepted",
    ("pending", "failed"): "submit_rejected",
    ("submitted", "confirmed"): "finality_confirmed",
    ("submitted", "failed"): "finality_failed",
}


def validate_payment_transition(current_status: str, target_status: str) -> str:
    """Validate a payment record transition and return the new status.

    Raises:
        InvalidStateTransitionError: If no event leads from current to target.
        ValueError: If the current status is unknown.
    """
    sm = PaymentRecordStateMachine(current_status=current_status)
    event_name = PAYMENT_TRANSITION_EVENTS.get((current_status, target_status))
    if event_name is None:
        raise InvalidStateTransitionError(current_status, target_status)
    try:
        getattr(sm, event_name)()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(current_status, target_status) from err
    return sm.status
