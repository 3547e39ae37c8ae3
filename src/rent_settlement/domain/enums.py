"""Domain enumerations for the Rent Settlement engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class AgreementStatus(enum.StrEnum):
    """Lifecycle states of a rent agreement's escrow contract.

    Mirrors the on-ledger EscrowContract state. See domain/state_machine.py.
    """

    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    SETTLED = "settled"
    DISPUTED = "disputed"


class PaymentStatus(enum.StrEnum):
    """Lifecycle states of a single PaymentRecord.

    Transitions are monotonic: pending -> submitted -> {confirmed | failed},
    plus pending -> failed on a fatal submission rejection.
    """

    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.CONFIRMED, PaymentStatus.FAILED)


class DisplayStatus(enum.StrEnum):
    """What a payer or landlord sees. Internal retry churn never shows up here."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"


class PaymentDirection(enum.StrEnum):
    """Closed set of transfer directions."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransactionKind(enum.StrEnum):
    """Operations that can be submitted to an escrow contract on the ledger."""

    INITIALIZE = "initialize"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    SETTLE = "settle"
    DISPUTE = "dispute"


class FinalityState(enum.StrEnum):
    """Answer from the ledger when asked about a submitted transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class EventType(enum.StrEnum):
    """Types of history events recorded in the payment_events table.

    Every payment state transition produces exactly one event. Terminal
    payment events, escalations and disputes double as the notification outbox.
    """

    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_SUBMITTED = "PAYMENT_SUBMITTED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    SUBMISSION_DEFERRED = "SUBMISSION_DEFERRED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    FLAGGED_FOR_REVIEW = "FLAGGED_FOR_REVIEW"
    RECONCILIATION_ESCALATED = "RECONCILIATION_ESCALATED"
    BALANCE_DIVERGENCE = "BALANCE_DIVERGENCE"
    AGREEMENT_CREATED = "AGREEMENT_CREATED"
    AGREEMENT_ACTIVATED = "AGREEMENT_ACTIVATED"
    AGREEMENT_SETTLED = "AGREEMENT_SETTLED"
    AGREEMENT_DISPUTED = "AGREEMENT_DISPUTED"
    AGREEMENT_ARCHIVED = "AGREEMENT_ARCHIVED"
    LIFECYCLE_REJECTED = "LIFECYCLE_REJECTED"


class ReconcileOutcome(enum.StrEnum):
    """Result of a single reconciliation cycle on one record."""

    LEASE_CONTENDED = "lease_contended"
    NOOP = "noop"
    NOT_DUE = "not_due"
    SUBMITTED = "submitted"
    DEFERRED = "deferred"
    AWAITING_FINALITY = "awaiting_finality"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    NEEDS_REVIEW = "needs_review"
