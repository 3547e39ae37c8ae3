"""Tests for PaymentLedger: creation, monotonic transitions, history and outbox."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from rent_settlement.domain.enums import EventType, PaymentDirection, PaymentStatus
from rent_settlement.domain.exceptions import (
    AgreementNotFoundError,
    DuplicateSubmissionError,
    InvalidAmountError,
    InvalidStateTransitionError,
)
from rent_settlement.services.payment_ledger import PaymentLedger, TransitionEvidence

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from rent_settlement.infrastructure.database.orm_models import Agreement


@pytest.fixture
def open_ledger(session_factory, clock, settings):
    @asynccontextmanager
    async def _open() -> AsyncIterator[PaymentLedger]:
        async with session_factory() as session, session.begin():
            yield PaymentLedger(session, clock=clock, settings=settings)

    return _open


class TestCreate:
    @pytest.mark.asyncio
    async def test_creates_pending_record_with_event(self, open_ledger, active_agreement: Agreement) -> None:
        async with open_ledger() as ledger:
            record = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)

        assert record.status == PaymentStatus.PENDING
        assert record.chain_id == record.id
        assert record.attempt_count == 0
        async with open_ledger() as ledger:
            events = await ledger.history(record.id)
        assert [e.event_type for e in events] == [EventType.PAYMENT_CREATED]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1, True])
    async def test_rejects_bad_amount(self, open_ledger, active_agreement: Agreement, amount: int) -> None:
        async with open_ledger() as ledger:
            with pytest.raises(InvalidAmountError):
                await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, amount)

    @pytest.mark.asyncio
    async def test_unknown_agreement(self, open_ledger) -> None:
        async with open_ledger() as ledger:
            with pytest.raises(AgreementNotFoundError):
                await ledger.create(uuid.uuid4(), "tenant-1", PaymentDirection.DEPOSIT, 500)

    @pytest.mark.asyncio
    async def test_duplicate_inside_debounce_window(self, open_ledger, active_agreement: Agreement, clock) -> None:
        async with open_ledger() as ledger:
            first = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)

        clock.advance(10)
        with pytest.raises(DuplicateSubmissionError) as exc_info:
            async with open_ledger() as ledger:
                await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
        assert str(first.id) in exc_info.value.message

        # A different amount or payer is a different payment.
        async with open_ledger() as ledger:
            await ledger.create(active_agreement.id, "tenant-2", PaymentDirection.DEPOSIT, 500)
            await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 499)

    @pytest.mark.asyncio
    async def test_same_payment_after_window_is_allowed(self, open_ledger, active_agreement: Agreement, clock) -> None:
        async with open_ledger() as ledger:
            await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
        clock.advance(31)
        async with open_ledger() as ledger:
            second = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
        assert second.status == PaymentStatus.PENDING


class TestTransition:
    @pytest.mark.asyncio
    async def test_full_lifecycle_and_balance(self, open_ledger, active_agreement: Agreement, clock) -> None:
        async with open_ledger() as ledger:
            record = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
            clock.advance(1)
            await ledger.transition(
                record.id,
                PaymentStatus.SUBMITTED,
                TransitionEvidence(submission_ref="ref-1", submitted_at=clock()),
            )
            clock.advance(1)
            confirmed = await ledger.transition(
                record.id,
                PaymentStatus.CONFIRMED,
                TransitionEvidence(confirmed_at=clock(), confirmed_amount=500, ledger_time=clock()),
            )

        assert confirmed.status == PaymentStatus.CONFIRMED
        assert confirmed.submission_ref == "ref-1"
        async with open_ledger() as ledger:
            assert await ledger.confirmed_balance(active_agreement.id) == 500
            assert await ledger.in_flight_count(active_agreement.id) == 0
            history = await ledger.history(record.id)
        assert [e.event_type for e in history] == [
            EventType.PAYMENT_CREATED,
            EventType.PAYMENT_SUBMITTED,
            EventType.PAYMENT_CONFIRMED,
        ]
        assert history[-1].notify is True
        assert history[1].notify is False

    @pytest.mark.asyncio
    async def test_confirmed_cannot_regress(self, open_ledger, active_agreement: Agreement, clock) -> None:
        async with open_ledger() as ledger:
            record = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
            await ledger.transition(record.id, PaymentStatus.SUBMITTED)
            await ledger.transition(record.id, PaymentStatus.CONFIRMED, TransitionEvidence(confirmed_amount=500))

        async with open_ledger() as ledger:
            with pytest.raises(InvalidStateTransitionError):
                await ledger.transition(record.id, PaymentStatus.FAILED)
            with pytest.raises(InvalidStateTransitionError):
                await ledger.transition(record.id, PaymentStatus.SUBMITTED)

    @pytest.mark.asyncio
    async def test_pending_cannot_jump_to_confirmed(self, open_ledger, active_agreement: Agreement) -> None:
        async with open_ledger() as ledger:
            record = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
            with pytest.raises(InvalidStateTransitionError):
                await ledger.transition(record.id, PaymentStatus.CONFIRMED)

    @pytest.mark.asyncio
    async def test_withdrawals_subtract_confirmed_amount(self, open_ledger, active_agreement: Agreement) -> None:
        async with open_ledger() as ledger:
            deposit = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 1000)
            withdrawal = await ledger.create(active_agreement.id, "landlord-1", PaymentDirection.WITHDRAWAL, 1)
            for record, moved in ((deposit, 1000), (withdrawal, 1000)):
                await ledger.transition(record.id, PaymentStatus.SUBMITTED)
                await ledger.transition(
                    record.id, PaymentStatus.CONFIRMED, TransitionEvidence(confirmed_amount=moved)
                )
            assert await ledger.confirmed_balance(active_agreement.id) == 0


class TestRetriesAndReview:
    @pytest.mark.asyncio
    async def test_record_attempt_pushes_back(self, open_ledger, active_agreement: Agreement, clock) -> None:
        async with open_ledger() as ledger:
            record = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
            updated = await ledger.record_attempt(record.id, 4.0, "unreachable", unknown_outcome=True)

        assert updated.attempt_count == 1
        assert updated.outcome_unknown is True
        assert updated.status == PaymentStatus.PENDING
        async with open_ledger() as ledger:
            assert await ledger.outstanding(clock()) == []
            clock.advance(4)
            assert [r.id for r in await ledger.outstanding(clock())] == [record.id]

    @pytest.mark.asyncio
    async def test_transaction_id_is_written_once(self, open_ledger, active_agreement: Agreement) -> None:
        async with open_ledger() as ledger:
            record = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
            first = await ledger.assign_transaction_id(record.id)
            await ledger.record_attempt(record.id, 0, "timeout", unknown_outcome=True)
            assert await ledger.assign_transaction_id(record.id) == first

    @pytest.mark.asyncio
    async def test_supersede_continues_the_chain(self, open_ledger, active_agreement: Agreement, clock) -> None:
        async with open_ledger() as ledger:
            record = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
            await ledger.transition(record.id, PaymentStatus.SUBMITTED)
            await ledger.transition(
                record.id,
                PaymentStatus.FAILED,
                TransitionEvidence(failure_reason="dropped", failure_retryable=True),
            )
            successor = await ledger.supersede(record.id, delay_seconds=2)

        assert successor.chain_id == record.chain_id
        assert successor.supersedes_id == record.id
        assert successor.attempt_count == 1
        assert successor.next_attempt_at == clock.now + timedelta(seconds=2)

    @pytest.mark.asyncio
    async def test_supersede_requires_failed(self, open_ledger, active_agreement: Agreement) -> None:
        async with open_ledger() as ledger:
            record = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
            with pytest.raises(InvalidStateTransitionError):
                await ledger.supersede(record.id, delay_seconds=2)

    @pytest.mark.asyncio
    async def test_escalate_flags_record_and_agreement(self, open_ledger, active_agreement: Agreement) -> None:
        async with open_ledger() as ledger:
            record = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
            await ledger.escalate(record.id, "5 failed attempts")

        async with open_ledger() as ledger:
            flagged = await ledger.get(record.id)
            agreement = await ledger.get_agreement(active_agreement.id)
            outbox = await ledger.pending_notifications()

        assert flagged.needs_review is True
        assert flagged.status == PaymentStatus.PENDING
        assert agreement.needs_review is True
        assert [e.event_type for e in outbox] == [EventType.RECONCILIATION_ESCALATED]
        assert outbox[0].new_status == "needs_review"

    @pytest.mark.asyncio
    async def test_flag_terminal_record_is_noop(self, open_ledger, active_agreement: Agreement) -> None:
        async with open_ledger() as ledger:
            record = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
            await ledger.transition(record.id, PaymentStatus.FAILED, TransitionEvidence(failure_reason="x"))
            assert await ledger.flag_for_review(record.id, "late") is False


class TestOutbox:
    @pytest.mark.asyncio
    async def test_mark_notified_once(self, open_ledger, active_agreement: Agreement) -> None:
        async with open_ledger() as ledger:
            record = await ledger.create(active_agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 500)
            await ledger.transition(record.id, PaymentStatus.FAILED, TransitionEvidence(failure_reason="x"))

        async with open_ledger() as ledger:
            (event,) = await ledger.pending_notifications()
            assert await ledger.mark_notified(event.id) is True
            assert await ledger.mark_notified(event.id) is False
            assert await ledger.pending_notifications() == []
