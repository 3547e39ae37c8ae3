"""Initial settlement schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19

Creates:
- agreements: rent agreements and their escrow contract handles
- payment_records: one row per attempted transfer
- payment_events: append-only history and notification outbox
- reconciliation_leases: per-record worker claims
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_json = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "agreements",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("landlord_id", sa.String(64), nullable=False),
        sa.Column("tenant_ids", _json, nullable=False),
        sa.Column("rent_amount", sa.BigInteger(), nullable=False),
        sa.Column("contract_ref", sa.String(128), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("needs_review", sa.Boolean(), nullable=False),
        sa.Column("review_reason", sa.Text(), nullable=True),
        sa.Column("mismatch_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('uninitialized', 'active', 'settled', 'disputed')",
            name="ck_agreement_valid_status",
        ),
        sa.CheckConstraint("rent_amount > 0", name="ck_agreement_positive_rent"),
    )
    op.create_index("idx_agreement_status", "agreements", ["status"])
    op.create_index("idx_agreement_landlord", "agreements", ["landlord_id"])

    op.create_table(
        "payment_records",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("agreement_id", sa.Uuid(), sa.ForeignKey("agreements.id"), nullable=False),
        sa.Column("chain_id", sa.Uuid(), nullable=False),
        sa.Column("supersedes_id", sa.Uuid(), sa.ForeignKey("payment_records.id"), nullable=True),
        sa.Column("payer_id", sa.String(64), nullable=False),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("transaction_id", sa.String(64), nullable=True),
        sa.Column("submission_ref", sa.String(128), nullable=True),
        sa.Column("outcome_unknown", sa.Boolean(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_amount", sa.BigInteger(), nullable=True),
        sa.Column("ledger_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("failure_retryable", sa.Boolean(), nullable=True),
        sa.Column("needs_review", sa.Boolean(), nullable=False),
        sa.Column("review_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'submitted', 'confirmed', 'failed')",
            name="ck_payment_valid_status",
        ),
        sa.CheckConstraint(
            "direction IN ('deposit', 'withdrawal')",
            name="ck_payment_valid_direction",
        ),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        sa.CheckConstraint("attempt_count >= 0", name="ck_payment_attempt_count"),
    )
    op.create_index("idx_payment_agreement", "payment_records", ["agreement_id", "created_at"])
    op.create_index("idx_payment_due", "payment_records", ["status", "next_attempt_at"])
    op.create_index("idx_payment_chain", "payment_records", ["chain_id"])
    op.create_index(
        "idx_payment_dedupe",
        "payment_records",
        ["agreement_id", "payer_id", "direction", "amount"],
    )

    # Append-only. Only notified_at is ever written after insert.
    op.create_table(
        "payment_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("agreement_id", sa.Uuid(), sa.ForeignKey("agreements.id"), nullable=False),
        sa.Column("record_id", sa.Uuid(), sa.ForeignKey("payment_records.id"), nullable=True),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("old_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=True),
        sa.Column("metadata", _json, nullable=True),
        sa.Column("notify", sa.Boolean(), nullable=False),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_event_record", "payment_events", ["record_id"])
    op.create_index("idx_event_agreement", "payment_events", ["agreement_id"])
    op.create_index("idx_event_outbox", "payment_events", ["notify", "notified_at"])

    op.create_table(
        "reconciliation_leases",
        sa.Column(
            "record_id",
            sa.Uuid(),
            sa.ForeignKey("payment_records.id"),
            primary_key=True,
        ),
        sa.Column("holder_id", sa.String(64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_lease_expires", "reconciliation_leases", ["expires_at"])


def downgrade() -> None:
    op.drop_table("reconciliation_leases")
    op.drop_table("payment_events")
    op.drop_table("payment_records")
    op.drop_table("agreements")
