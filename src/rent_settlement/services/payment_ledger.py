"""Payment Ledger — durable payment records and their status history.

This is the only writer of payment_records. Every status change goes
through transition(), which:
    1. validates the move with PaymentRecordStateMachine,
    2. applies it as a compare-and-set UPDATE ... WHERE status = :current,
    3. appends a payment_events row (terminal events enter the outbox).

An illegal or stale transition means reconciliation has a bug. It is
logged at error level and re-raised, never dropped.

The ledger flushes but never commits; the caller owns the transaction.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from rent_settlement.config import get_settings
from rent_settlement.domain.enums import DisplayStatus, EventType, PaymentDirection, PaymentStatus
from rent_settlement.domain.exceptions import (
    AgreementNotFoundError,
    DuplicateSubmissionError,
    InvalidAmountError,
    InvalidStateTransitionError,
    PaymentRecordNotFoundError,
)
from rent_settlement.domain.ledger_protocol import make_transaction_id
from rent_settlement.domain.state_machine import validate_payment_transition
from rent_settlement.infrastructure.database.orm_models import Agreement, PaymentRecord
from rent_settlement.infrastructure.database.repositories import (
    AgreementRepository,
    PaymentEventRepository,
    PaymentRecordRepository,
)
from rent_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from rent_settlement.config import Settings
    from rent_settlement.infrastructure.database.orm_models import PaymentEvent

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


_TRANSITION_EVENTS: dict[PaymentStatus, EventType] = {
    PaymentStatus.SUBMITTED: EventType.PAYMENT_SUBMITTED,
    PaymentStatus.CONFIRMED: EventType.PAYMENT_CONFIRMED,
    PaymentStatus.FAILED: EventType.PAYMENT_FAILED,
}


@dataclass(frozen=True)
class TransitionEvidence:
    """What the ledger told us, recorded alongside a status change."""

    submission_ref: str | None = None
    submitted_at: datetime | None = None
    confirmed_at: datetime | None = None
    confirmed_amount: int | None = None
    ledger_time: datetime | None = None
    failure_reason: str | None = None
    failure_retryable: bool | None = None

    def to_values(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_metadata(self) -> dict:
        return {
            k: (v.isoformat() if isinstance(v, datetime) else v)
            for k, v in self.to_values().items()
        }


def _notifies(new_status: PaymentStatus, evidence: TransitionEvidence) -> bool:
    # Superseded or escalated next; the escalation carries the notification.
    if new_status == PaymentStatus.FAILED and evidence.failure_retryable:
        return False
    return new_status.is_terminal


class PaymentLedger:
    """Local source of truth for what happened to each payment."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or utcnow
        self._settings = settings or get_settings()
        self._agreements = AgreementRepository(session)
        self._records = PaymentRecordRepository(session)
        self._events = PaymentEventRepository(session)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(
        self,
        agreement_id: uuid.UUID,
        payer_id: str,
        direction: PaymentDirection,
        amount: int,
    ) -> PaymentRecord:
        """Insert a new pending record, rejecting duplicates inside the debounce window.

        Raises:
            InvalidAmountError: amount is not a positive integer.
            AgreementNotFoundError: no such agreement.
            DuplicateSubmissionError: an identical record is still in flight.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(amount)

        # Row lock serializes concurrent initiations for one agreement.
        agreement = await self._agreements.get_by_id(agreement_id, for_update=True)
        if agreement is None:
            raise AgreementNotFoundError(str(agreement_id))

        now = self._clock()
        cutoff = now - timedelta(seconds=self._settings.debounce_window_seconds)
        duplicate = await self._records.find_active_duplicate(
            agreement_id, payer_id, direction, amount, created_since=cutoff
        )
        if duplicate is not None:
            logger.info(
                "payment_ledger.duplicate_rejected",
                agreement_id=str(agreement_id),
                existing_record_id=str(duplicate.id),
            )
            raise DuplicateSubmissionError(str(duplicate.id))

        record_id = uuid.uuid4()
        record = PaymentRecord(
            id=record_id,
            agreement_id=agreement_id,
            chain_id=record_id,
            payer_id=payer_id,
            direction=direction.value,
            amount=amount,
            status=PaymentStatus.PENDING.value,
            attempt_count=0,
            outcome_unknown=False,
            needs_review=False,
            created_at=now,
        )
        record = await self._records.create(record)

        await self._events.record(
            agreement_id=agreement_id,
            record_id=record.id,
            event_type=EventType.PAYMENT_CREATED,
            old_status=None,
            new_status=PaymentStatus.PENDING.value,
            actor=payer_id,
            amount=amount,
            metadata={"direction": direction.value},
            created_at=now,
        )

        logger.info(
            "payment_ledger.created",
            record_id=str(record.id),
            agreement_id=str(agreement_id),
            direction=direction.value,
            amount=amount,
        )
        return record

    async def supersede(self, failed_record_id: uuid.UUID, delay_seconds: float) -> PaymentRecord:
        """Create the next pending attempt of a failed record's chain."""
        failed = await self.get(failed_record_id)
        if failed.status != PaymentStatus.FAILED.value:
            raise InvalidStateTransitionError(failed.status, "superseded")

        now = self._clock()
        attempt = failed.attempt_count + 1
        successor = PaymentRecord(
            id=uuid.uuid4(),
            agreement_id=failed.agreement_id,
            chain_id=failed.chain_id,
            supersedes_id=failed.id,
            payer_id=failed.payer_id,
            direction=failed.direction,
            amount=failed.amount,
            status=PaymentStatus.PENDING.value,
            attempt_count=attempt,
            outcome_unknown=False,
            needs_review=False,
            next_attempt_at=now + timedelta(seconds=delay_seconds),
            created_at=now,
        )
        successor = await self._records.create(successor)

        await self._events.record(
            agreement_id=failed.agreement_id,
            record_id=successor.id,
            event_type=EventType.RETRY_SCHEDULED,
            old_status=None,
            new_status=PaymentStatus.PENDING.value,
            amount=successor.amount,
            metadata={
                "supersedes": str(failed.id),
                "attempt": attempt,
                "delay_seconds": delay_seconds,
            },
            created_at=now,
        )
        logger.info(
            "payment_ledger.superseded",
            failed_record_id=str(failed.id),
            record_id=str(successor.id),
            attempt=attempt,
        )
        return successor

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        record_id: uuid.UUID,
        new_status: PaymentStatus,
        evidence: TransitionEvidence | None = None,
        actor: str = "SYSTEM",
    ) -> PaymentRecord:
        """Move a record along the monotonic lifecycle.

        Raises:
            PaymentRecordNotFoundError: no such record.
            InvalidStateTransitionError: illegal move, or the record changed
                under us (compare-and-set matched no row).
        """
        record = await self.get(record_id)
        current = PaymentStatus(record.status)
        evidence = evidence or TransitionEvidence()

        try:
            validate_payment_transition(current.value, new_status.value)
        except InvalidStateTransitionError:
            logger.error(
                "payment_ledger.invalid_transition",
                record_id=str(record_id),
                current=current.value,
                attempted=new_status.value,
            )
            raise

        values = {"status": new_status.value, **evidence.to_values()}
        if new_status == PaymentStatus.SUBMITTED:
            values["outcome_unknown"] = False
            values["next_attempt_at"] = None

        changed = await self._records.compare_and_set(record_id, current, values)
        if changed == 0:
            logger.error(
                "payment_ledger.invalid_transition",
                record_id=str(record_id),
                current=current.value,
                attempted=new_status.value,
                stale=True,
            )
            raise InvalidStateTransitionError(current.value, new_status.value)

        record = await self.get(record_id)
        amount = record.confirmed_amount if new_status == PaymentStatus.CONFIRMED else record.amount
        await self._events.record(
            agreement_id=record.agreement_id,
            record_id=record.id,
            event_type=_TRANSITION_EVENTS[new_status],
            old_status=current.value,
            new_status=new_status.value,
            actor=actor,
            amount=amount,
            metadata=evidence.to_metadata() or None,
            notify=_notifies(new_status, evidence),
            created_at=self._clock(),
        )

        logger.info(
            "payment_ledger.transitioned",
            record_id=str(record_id),
            old_status=current.value,
            new_status=new_status.value,
        )
        return record

    async def record_attempt(
        self,
        record_id: uuid.UUID,
        delay_seconds: float,
        error: str,
        unknown_outcome: bool = False,
        counted: bool = True,
    ) -> PaymentRecord:
        """Push back a pending record's next attempt after a failed ledger call.

        ``counted`` is False for failed lookups of an earlier, unresolved
        submit; those leave attempt_count alone.
        """
        record = await self.get(record_id)
        now = self._clock()
        values = {
            "next_attempt_at": now + timedelta(seconds=delay_seconds),
            "outcome_unknown": record.outcome_unknown or unknown_outcome,
            "last_checked_at": now,
        }
        if counted:
            values["attempt_count"] = PaymentRecord.attempt_count + 1
        if await self._records.compare_and_set(record_id, PaymentStatus.PENDING, values) == 0:
            logger.error(
                "payment_ledger.invalid_transition",
                record_id=str(record_id),
                current=record.status,
                attempted="retry",
            )
            raise InvalidStateTransitionError(record.status, "retry")

        record = await self.get(record_id)
        await self._events.record(
            agreement_id=record.agreement_id,
            record_id=record.id,
            event_type=EventType.SUBMISSION_DEFERRED,
            old_status=PaymentStatus.PENDING.value,
            new_status=PaymentStatus.PENDING.value,
            metadata={
                "attempt": record.attempt_count,
                "error": error,
                "counted": counted,
                "unknown_outcome": unknown_outcome,
                "delay_seconds": delay_seconds,
            },
            created_at=now,
        )
        return record

    async def assign_transaction_id(self, record_id: uuid.UUID) -> str:
        """Write the record's ledger transaction id ahead of the first submit.

        Idempotent: an already-assigned id is returned unchanged.
        """
        record = await self.get(record_id)
        if record.transaction_id:
            return record.transaction_id

        transaction_id = make_transaction_id(record.chain_id, record.attempt_count)
        changed = await self._records.compare_and_set(
            record_id, PaymentStatus.PENDING, {"transaction_id": transaction_id}
        )
        if changed == 0:
            raise InvalidStateTransitionError(record.status, "assign_transaction_id")
        return transaction_id

    async def mark_checked(self, record_id: uuid.UUID) -> None:
        """Stamp last_checked_at on a submitted record after an inconclusive poll."""
        await self._records.compare_and_set(
            record_id, PaymentStatus.SUBMITTED, {"last_checked_at": self._clock()}
        )

    async def flag_for_review(self, record_id: uuid.UUID, reason: str) -> bool:
        """Flag a non-terminal record for manual review; status is unchanged.

        Returns False (and writes nothing) for terminal or already-flagged records.
        """
        record = await self.get(record_id)
        status = PaymentStatus(record.status)
        if status.is_terminal or record.needs_review:
            return False

        changed = await self._records.compare_and_set(
            record_id, status, {"needs_review": True, "review_reason": reason}
        )
        if changed == 0:
            return False

        await self._events.record(
            agreement_id=record.agreement_id,
            record_id=record.id,
            event_type=EventType.FLAGGED_FOR_REVIEW,
            old_status=status.value,
            new_status=status.value,
            amount=record.amount,
            metadata={"reason": reason},
            created_at=self._clock(),
        )
        logger.warning("payment_ledger.flagged_for_review", record_id=str(record_id), reason=reason)
        return True

    async def escalate(self, record_id: uuid.UUID, reason: str) -> None:
        """Hand a payment chain over to a human.

        Flags the record (when still non-terminal) and its agreement, and
        queues a needs_review notification. No automatic retry follows.
        """
        record = await self.get(record_id)
        await self.flag_for_review(record_id, reason)

        agreement = await self.get_agreement(record.agreement_id)
        await self._agreements.flag_for_review(agreement, reason)

        await self._events.record(
            agreement_id=agreement.id,
            record_id=record.id,
            event_type=EventType.RECONCILIATION_ESCALATED,
            old_status=record.status,
            new_status=DisplayStatus.NEEDS_REVIEW.value,
            amount=record.amount,
            metadata={"reason": reason, "attempt": record.attempt_count},
            notify=True,
            created_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_agreement(self, agreement_id: uuid.UUID) -> Agreement:
        agreement = await self._agreements.get_by_id(agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(str(agreement_id))
        return agreement

    async def get(self, record_id: uuid.UUID) -> PaymentRecord:
        record = await self._records.get_by_id(record_id)
        if record is None:
            raise PaymentRecordNotFoundError(str(record_id))
        return record

    async def latest_for_agreement(self, agreement_id: uuid.UUID) -> list[PaymentRecord]:
        """All records of an agreement ordered by created_at, for audit display."""
        return await self._records.get_by_agreement(agreement_id)

    async def outstanding(self, now: datetime | None = None, limit: int | None = None) -> list[PaymentRecord]:
        return await self._records.get_outstanding(
            now or self._clock(),
            limit or self._settings.batch_size,
        )

    async def confirmed_balance(self, agreement_id: uuid.UUID) -> int:
        """Confirmed deposits minus confirmed withdrawals, as the ledger moved them."""
        deposits = await self._records.sum_confirmed(agreement_id, PaymentDirection.DEPOSIT)
        withdrawals = await self._records.sum_confirmed(agreement_id, PaymentDirection.WITHDRAWAL)
        return deposits - withdrawals

    async def in_flight_count(self, agreement_id: uuid.UUID) -> int:
        return await self._records.count_in_flight(agreement_id)

    async def history(self, record_id: uuid.UUID) -> list[PaymentEvent]:
        return await self._events.get_by_record(record_id)

    # ------------------------------------------------------------------
    # Notification outbox
    # ------------------------------------------------------------------

    async def pending_notifications(self, limit: int | None = None) -> list[PaymentEvent]:
        return await self._events.get_undelivered(limit or self._settings.batch_size)

    async def mark_notified(self, event_id: uuid.UUID) -> bool:
        return await self._events.mark_notified(event_id, self._clock()) == 1
