"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Status writes on payment records and lease takeovers are conditional
UPDATEs that report the affected row count; the caller decides what a
zero means (stale transition, contention).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, or_, select, update

from rent_settlement.domain.enums import AgreementStatus, PaymentDirection, PaymentStatus
from rent_settlement.infrastructure.database.orm_models import (
    Agreement,
    PaymentEvent,
    PaymentRecord,
    ReconciliationLease,
)

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from rent_settlement.domain.enums import EventType

_ACTIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.SUBMITTED.value)


class AgreementRepository:
    """Data access for rent agreements."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, agreement: Agreement) -> Agreement:
        """Insert a new agreement."""
        self._session.add(agreement)
        await self._session.flush()
        return agreement

    async def get_by_id(self, agreement_id: uuid.UUID, for_update: bool = False) -> Agreement | None:
        """Fetch an agreement by its UUID, optionally locking the row."""
        stmt = (
            select(Agreement)
            .where(Agreement.id == agreement_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_reconcilable(self) -> list[Agreement]:
        """Active, non-archived agreements (candidates for balance checks)."""
        result = await self._session.execute(
            select(Agreement)
            .where(
                Agreement.status == AgreementStatus.ACTIVE.value,
                Agreement.archived_at.is_(None),
            )
            .order_by(Agreement.created_at.asc())
        )
        return list(result.scalars().all())

    async def update_status(self, agreement: Agreement, new_status: AgreementStatus) -> Agreement:
        """Update the status of an agreement (call AFTER state machine validation)."""
        agreement.status = new_status.value
        await self._session.flush()
        return agreement

    async def flag_for_review(self, agreement: Agreement, reason: str) -> Agreement:
        agreement.needs_review = True
        agreement.review_reason = reason
        await self._session.flush()
        return agreement

    async def set_mismatch_since(self, agreement: Agreement, when: datetime | None) -> Agreement:
        agreement.mismatch_since = when
        await self._session.flush()
        return agreement

    async def archive(self, agreement: Agreement, when: datetime) -> Agreement:
        agreement.archived_at = when
        await self._session.flush()
        return agreement


class PaymentRecordRepository:
    """Data access for payment records."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, record: PaymentRecord) -> PaymentRecord:
        """Insert a new payment record."""
        self._session.add(record)
        await self._session.flush()
        return record

    async def get_by_id(self, record_id: uuid.UUID) -> PaymentRecord | None:
        """Fetch a record by its UUID, overwriting any stale identity-map copy."""
        result = await self._session.execute(
            select(PaymentRecord)
            .where(PaymentRecord.id == record_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_active_duplicate(
        self,
        agreement_id: uuid.UUID,
        payer_id: str,
        direction: PaymentDirection,
        amount: int,
        created_since: datetime,
    ) -> PaymentRecord | None:
        """Return a non-terminal record for the same tuple created since the cutoff."""
        result = await self._session.execute(
            select(PaymentRecord)
            .where(
                PaymentRecord.agreement_id == agreement_id,
                PaymentRecord.payer_id == payer_id,
                PaymentRecord.direction == direction.value,
                PaymentRecord.amount == amount,
                PaymentRecord.status.in_(_ACTIVE_PAYMENT_STATUSES),
                PaymentRecord.created_at >= created_since,
            )
            .order_by(PaymentRecord.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_agreement(self, agreement_id: uuid.UUID) -> list[PaymentRecord]:
        """Fetch all records for an agreement, oldest first."""
        result = await self._session.execute(
            select(PaymentRecord)
            .where(PaymentRecord.agreement_id == agreement_id)
            .order_by(PaymentRecord.created_at.asc(), PaymentRecord.attempt_count.asc())
        )
        return list(result.scalars().all())

    async def get_outstanding(self, now: datetime, limit: int) -> list[PaymentRecord]:
        """Non-terminal records whose backoff gate has passed.

        Pending records parked for review are excluded; submitted ones keep
        being polled because finality may still arrive.
        """
        result = await self._session.execute(
            select(PaymentRecord)
            .where(
                PaymentRecord.status.in_(_ACTIVE_PAYMENT_STATUSES),
                or_(
                    PaymentRecord.status == PaymentStatus.SUBMITTED.value,
                    PaymentRecord.needs_review.is_(False),
                ),
                or_(
                    PaymentRecord.next_attempt_at.is_(None),
                    PaymentRecord.next_attempt_at <= now,
                ),
            )
            .order_by(PaymentRecord.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def compare_and_set(
        self,
        record_id: uuid.UUID,
        expected_status: PaymentStatus,
        values: dict[str, Any],
    ) -> int:
        """UPDATE the record only if it is still in `expected_status`.

        Returns the number of rows changed (0 or 1).
        """
        result = await self._session.execute(
            update(PaymentRecord)
            .where(
                PaymentRecord.id == record_id,
                PaymentRecord.status == expected_status.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def sum_confirmed(self, agreement_id: uuid.UUID, direction: PaymentDirection) -> int:
        result = await self._session.execute(
            select(func.coalesce(func.sum(PaymentRecord.confirmed_amount), 0)).where(
                PaymentRecord.agreement_id == agreement_id,
                PaymentRecord.direction == direction.value,
                PaymentRecord.status == PaymentStatus.CONFIRMED.value,
            )
        )
        return int(result.scalar_one())

    async def count_in_flight(self, agreement_id: uuid.UUID) -> int:
        result = await self._session.execute(
            select(func.count(PaymentRecord.id)).where(
                PaymentRecord.agreement_id == agreement_id,
                PaymentRecord.status.in_(_ACTIVE_PAYMENT_STATUSES),
            )
        )
        return int(result.scalar_one())


class PaymentEventRepository:
    """Data access for the append-only history log and its outbox column."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        agreement_id: uuid.UUID,
        event_type: EventType,
        new_status: str,
        old_status: str | None = None,
        record_id: uuid.UUID | None = None,
        actor: str = "SYSTEM",
        amount: int | None = None,
        metadata: dict | None = None,
        notify: bool = False,
        created_at: datetime | None = None,
    ) -> PaymentEvent:
        """Append a new history event. This is the ONLY insert allowed."""
        evt = PaymentEvent(
            agreement_id=agreement_id,
            record_id=record_id,
            event_type=event_type.value,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            amount=amount,
            metadata_json=metadata,
            notify=notify,
        )
        if created_at is not None:
            evt.created_at = created_at
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_record(self, record_id: uuid.UUID) -> list[PaymentEvent]:
        """Fetch all events for a record in chronological order."""
        result = await self._session.execute(
            select(PaymentEvent)
            .where(PaymentEvent.record_id == record_id)
            .order_by(PaymentEvent.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_by_agreement(self, agreement_id: uuid.UUID) -> list[PaymentEvent]:
        result = await self._session.execute(
            select(PaymentEvent)
            .where(PaymentEvent.agreement_id == agreement_id)
            .order_by(PaymentEvent.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_undelivered(self, limit: int) -> list[PaymentEvent]:
        """Outbox rows still waiting for the notifier, oldest first."""
        result = await self._session.execute(
            select(PaymentEvent)
            .where(PaymentEvent.notify.is_(True), PaymentEvent.notified_at.is_(None))
            .order_by(PaymentEvent.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_notified(self, event_id: uuid.UUID, when: datetime) -> int:
        result = await self._session.execute(
            update(PaymentEvent)
            .where(PaymentEvent.id == event_id, PaymentEvent.notified_at.is_(None))
            .values(notified_at=when)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class LeaseRepository:
    """Data access for reconciliation leases."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def take_over(
        self,
        record_id: uuid.UUID,
        holder_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> int:
        """Claim an existing lease row if it has expired or is already ours."""
        result = await self._session.execute(
            update(ReconciliationLease)
            .where(
                ReconciliationLease.record_id == record_id,
                or_(
                    ReconciliationLease.expires_at <= now,
                    ReconciliationLease.holder_id == holder_id,
                ),
            )
            .values(holder_id=holder_id, expires_at=expires_at, acquired_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def insert(
        self,
        record_id: uuid.UUID,
        holder_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> ReconciliationLease:
        """Insert a fresh lease row. Raises IntegrityError if one already exists."""
        lease = ReconciliationLease(
            record_id=record_id,
            holder_id=holder_id,
            expires_at=expires_at,
            acquired_at=now,
        )
        self._session.add(lease)
        await self._session.flush()
        return lease

    async def get(self, record_id: uuid.UUID) -> ReconciliationLease | None:
        result = await self._session.execute(
            select(ReconciliationLease)
            .where(ReconciliationLease.record_id == record_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def delete(self, record_id: uuid.UUID, holder_id: str) -> int:
        """Drop the lease row if (and only if) we still hold it."""
        result = await self._session.execute(
            delete(ReconciliationLease)
            .where(
                ReconciliationLease.record_id == record_id,
                ReconciliationLease.holder_id == holder_id,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
