"""SQLAlchemy 2.0 ORM models for the Rent Settlement engine.

Four tables:
    1. agreements             — One rent agreement and its escrow contract handle.
    2. payment_records        — One attempted transfer into or out of escrow.
    3. payment_events         — Append-only status history; doubles as notification outbox.
    4. reconciliation_leases  — At most one live claim per payment record.

Design decisions:
    - UUID primary keys via sqlalchemy.Uuid (native on PostgreSQL, CHAR(32) on SQLite).
    - BigInteger amounts in the smallest currency unit; no floats, no Decimal.
    - UTCDateTime stores UTC and always hands back aware datetimes, so the
      same comparisons work on PostgreSQL and SQLite.
    - JSON columns use JSONB on PostgreSQL.
    - CHECK constraints keep status and amount columns honest at DB level.
    - Rows are never deleted. Agreements are archived, failed payment records
      are superseded, history events are append-only.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that normalizes to UTC on the way in and out."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001, ANN201
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"naive datetime not allowed: {value!r}")
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):  # noqa: ANN001, ANN201
        if value is None:
            return None
        # SQLite drops the offset; everything we store is UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. agreements
# ---------------------------------------------------------------------------
class Agreement(Base):
    """A rent agreement between one landlord and one or more tenants."""

    __tablename__ = "agreements"

    # --- Primary Key ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Parties ---
    landlord_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Owner of the agreement; the only party allowed to withdraw",
    )
    tenant_ids: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        comment="Ordered, duplicate-free list of tenant ids (deposit rights)",
    )

    # --- Terms ---
    rent_amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Rent in the smallest currency unit",
    )
    contract_ref: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
        comment="Opaque handle of the on-ledger escrow contract instance",
    )

    # --- Status (mirrors the on-ledger contract) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="uninitialized",
        comment="Lifecycle state (guarded by EscrowContractStateMachine)",
    )

    # --- Reconciliation flags ---
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    mismatch_since: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        default=None,
        comment="First time the local and ledger balances were seen to differ",
    )

    # --- Timestamps ---
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('uninitialized', 'active', 'settled', 'disputed')",
            name="ck_agreement_valid_status",
        ),
        CheckConstraint("rent_amount > 0", name="ck_agreement_positive_rent"),
        Index("idx_agreement_status", "status"),
        Index("idx_agreement_landlord", "landlord_id"),
    )

    def __repr__(self) -> str:
        return f"<Agreement id={self.id} status={self.status} rent={self.rent_amount}>"


# ---------------------------------------------------------------------------
# 2. payment_records
# ---------------------------------------------------------------------------
class PaymentRecord(Base):
    """One attempted transfer. Terminal rows are never mutated."""

    __tablename__ = "payment_records"

    # --- Identity ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agreement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agreements.id"),
        nullable=False,
    )
    chain_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        comment="Logical payment this attempt belongs to (id of the first record)",
    )
    supersedes_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("payment_records.id"),
        nullable=True,
        default=None,
        comment="Failed record this one retries",
    )

    # --- Transfer ---
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="Lifecycle state (guarded by PaymentRecordStateMachine)",
    )

    # --- Ledger identity ---
    transaction_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Client-assigned transaction id, written before the first submit",
    )
    submission_ref: Mapped[str | None] = mapped_column(String(128), nullable=True, default=None)
    outcome_unknown: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Last submit may have reached the ledger; look it up before resubmitting",
    )

    # --- Retry bookkeeping ---
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)

    # --- Outcome ---
    confirmed_amount: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        default=None,
        comment="Amount the ledger actually moved (a withdrawal moves the full balance)",
    )
    ledger_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    failure_retryable: Mapped[bool | None] = mapped_column(Boolean, nullable=True, default=None)

    # --- Review flag ---
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)
    last_checked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'submitted', 'confirmed', 'failed')",
            name="ck_payment_valid_status",
        ),
        CheckConstraint(
            "direction IN ('deposit', 'withdrawal')",
            name="ck_payment_valid_direction",
        ),
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        CheckConstraint("attempt_count >= 0", name="ck_payment_attempt_count"),
        Index("idx_payment_agreement", "agreement_id", "created_at"),
        Index("idx_payment_due", "status", "next_attempt_at"),
        Index("idx_payment_chain", "chain_id"),
        Index("idx_payment_dedupe", "agreement_id", "payer_id", "direction", "amount"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentRecord id={self.id} {self.direction} {self.amount} "
            f"status={self.status} attempt={self.attempt_count}>"
        )


# ---------------------------------------------------------------------------
# 3. payment_events (Append-Only History + Notification Outbox)
# ---------------------------------------------------------------------------
class PaymentEvent(Base):
    """Immutable history entry for a payment record or its agreement.

    This table is APPEND-ONLY apart from `notified_at`, which the
    notification dispatcher stamps once the EventNotifier has accepted the
    event. Rows with notify=True and notified_at NULL form the outbox.
    """

    __tablename__ = "payment_events"

    # --- Primary Key ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Foreign Keys ---
    agreement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agreements.id"),
        nullable=False,
    )
    record_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("payment_records.id"),
        nullable=True,
        comment="Null for agreement-level events (divergence, lifecycle)",
    )

    # --- Event Details ---
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
        comment="Arbitrary context: submission ref, failure reason, balances",
    )

    # --- Outbox ---
    notify: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)

    # --- Timestamp ---
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_event_record", "record_id"),
        Index("idx_event_agreement", "agreement_id"),
        Index("idx_event_outbox", "notify", "notified_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# 4. reconciliation_leases
# ---------------------------------------------------------------------------
class ReconciliationLease(Base):
    """Time-bounded ownership of one payment record by one worker.

    record_id is the primary key, so two live claims on the same record
    cannot coexist; an expired row is taken over in place.
    """

    __tablename__ = "reconciliation_leases"

    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payment_records.id"),
        primary_key=True,
    )
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_lease_expires", "expires_at"),)

    def __repr__(self) -> str:
        return f"<ReconciliationLease record={self.record_id} holder={self.holder_id}>"


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
event.listen(Agreement, "before_update", _set_updated_at)
