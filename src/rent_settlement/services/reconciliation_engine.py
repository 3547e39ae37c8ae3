"""Reconciliation Engine — drives payment records to ledger finality.

One call to reconcile_record() advances a single record by one step,
under a ReconciliationLease:

    pending    -> write the transaction id ahead, then submit
                  (after an unknown outcome: look the id up first)
    submitted  -> query finality; confirm, fail, or keep waiting
    failed     -> retryable failures get a superseding pending record,
                  with exponential backoff, until max_attempts
    over cap   -> record and agreement flagged needs_review; no more retries

Every ledger call carries a bounded timeout. A timed-out submit is an
unknown outcome: the record keeps its transaction id and the next cycle
asks the ledger about that id before resubmitting it. The ledger
deduplicates on the id, so nothing is ever spent twice.

No database transaction is held open across a ledger call. Each step
reads, releases the session, talks to the ledger, then writes in a new
short transaction through PaymentLedger's compare-and-set contract.

check_balances() compares local confirmed balances with the ledger for
quiet agreements, and dispatch_notifications() drains the outbox.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from rent_settlement.config import get_settings
from rent_settlement.domain.enums import (
    AgreementStatus,
    EventType,
    FinalityState,
    PaymentDirection,
    PaymentStatus,
    ReconcileOutcome,
    TransactionKind,
)
from rent_settlement.domain.exceptions import (
    BalanceDivergenceError,
    FatalLedgerRejectionError,
    InvalidStateTransitionError,
    RetryableNetworkError,
    UnauthorizedError,
)
from rent_settlement.domain.ledger_protocol import LedgerTransaction
from rent_settlement.domain.state_machine import EscrowContractStateMachine
from rent_settlement.infrastructure.database.repositories import (
    AgreementRepository,
    PaymentEventRepository,
)
from rent_settlement.logging_config import get_logger, record_context
from rent_settlement.services.lease_manager import LeaseManager
from rent_settlement.services.payment_ledger import (
    Clock,
    PaymentLedger,
    TransitionEvidence,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from rent_settlement.config import Settings
    from rent_settlement.domain.ledger_protocol import EventNotifier, LedgerClient
    from rent_settlement.infrastructure.database.orm_models import PaymentRecord

logger = get_logger(__name__)

# Ledger status -> (state machine event, history event, notify)
_MIRRORED_STATUSES: dict[str, tuple[str, EventType, bool]] = {
    AgreementStatus.SETTLED.value: ("settle", EventType.AGREEMENT_SETTLED, False),
    AgreementStatus.DISPUTED.value: ("dispute", EventType.AGREEMENT_DISPUTED, True),
}


@dataclass(frozen=True)
class BalanceDivergence:
    """A persistent disagreement between local records and the ledger."""

    agreement_id: uuid.UUID
    local_balance: int
    ledger_balance: int
    detected_at: datetime

    def to_error(self) -> BalanceDivergenceError:
        return BalanceDivergenceError(
            str(self.agreement_id), self.local_balance, self.ledger_balance
        )


@dataclass(frozen=True)
class _AgreementView:
    id: uuid.UUID
    contract_ref: str
    local_balance: int


class ReconciliationEngine:
    """Advances outstanding payment records; one instance per worker."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger_client: LedgerClient,
        notifier: EventNotifier,
        holder_id: str | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
        lease_manager: LeaseManager | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = ledger_client
        self._notifier = notifier
        self._clock = clock or utcnow
        self._settings = settings or get_settings()
        self.holder_id = holder_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._leases = lease_manager or LeaseManager(
            session_factory,
            clock=self._clock,
            ttl_seconds=self._settings.lease_ttl_seconds,
        )
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        """Stop taking new leases. In-flight calls finish or time out."""
        self._stopping.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def backoff_delay(self, attempt: int) -> float:
        """min(base * 2^attempt, cap) seconds."""
        return min(
            self._settings.backoff_base_seconds * (2**attempt),
            self._settings.backoff_cap_seconds,
        )

    # ------------------------------------------------------------------
    # Batch entry points
    # ------------------------------------------------------------------

    async def run_once(self) -> Counter[ReconcileOutcome]:
        """Reconcile every due record once, then drain the notification outbox."""
        async with self._ledger() as ledger:
            due = [record.id for record in await ledger.outstanding(self._clock())]

        outcomes: Counter[ReconcileOutcome] = Counter()
        for record_id in due:
            if self.stopping:
                break
            outcomes[await self.reconcile_record(record_id)] += 1

        await self.dispatch_notifications()
        if due:
            logger.info(
                "reconciliation.cycle_complete",
                holder_id=self.holder_id,
                **{outcome.value: count for outcome, count in outcomes.items()},
            )
        return outcomes

    async def reconcile_record(self, record_id: uuid.UUID) -> ReconcileOutcome:
        """Run one cycle for one record under a lease."""
        lease = await self._leases.acquire(record_id, self.holder_id)
        if lease is None:
            return ReconcileOutcome.LEASE_CONTENDED
        try:
            with record_context(record_id):
                return await self._advance(record_id)
        finally:
            await self._leases.release(lease)

    # ------------------------------------------------------------------
    # Per-record state machine
    # ------------------------------------------------------------------

    async def _advance(self, record_id: uuid.UUID) -> ReconcileOutcome:
        async with self._ledger() as ledger:
            record = await ledger.get(record_id)
            agreement = await ledger.get_agreement(record.agreement_id)
            contract_ref = agreement.contract_ref

        status = PaymentStatus(record.status)
        if status.is_terminal:
            return ReconcileOutcome.NOOP
        if record.next_attempt_at is not None and record.next_attempt_at > self._clock():
            return ReconcileOutcome.NOT_DUE

        match status:
            case PaymentStatus.PENDING:
                if record.needs_review:
                    return ReconcileOutcome.NEEDS_REVIEW
                return await self._submit(record, contract_ref)
            case PaymentStatus.SUBMITTED:
                return await self._poll(record)
        return ReconcileOutcome.NOOP

    async def _submit(self, record: PaymentRecord, contract_ref: str) -> ReconcileOutcome:
        async with self._ledger() as ledger:
            transaction_id = await ledger.assign_transaction_id(record.id)
        transaction = _build_transaction(record, transaction_id, contract_ref)
        log = logger.bind(record_id=str(record.id), transaction_id=transaction_id)

        if record.outcome_unknown:
            try:
                finality = await self._call(self._client.query_finality(transaction_id))
            except RetryableNetworkError as exc:
                # Not a submit attempt; the earlier one may still have landed.
                return await self._defer(record, exc, counted=False)
            if finality.state != FinalityState.UNKNOWN:
                # The earlier submit did land; adopt it instead of resubmitting.
                log.info("reconciliation.submission_adopted", state=finality.state.value)
                return await self._mark_submitted(record, transaction_id)

        try:
            receipt = await self._call(self._client.submit(transaction))
        except RetryableNetworkError as exc:
            return await self._defer(record, exc)
        except (FatalLedgerRejectionError, UnauthorizedError) as exc:
            reason = getattr(exc, "reason", exc.code)
            async with self._ledger() as ledger:
                await ledger.transition(
                    record.id,
                    PaymentStatus.FAILED,
                    TransitionEvidence(failure_reason=reason, failure_retryable=False),
                )
            log.warning("reconciliation.rejected", reason=reason)
            return ReconcileOutcome.FAILED

        log.info("reconciliation.submitted", submission_ref=receipt.submission_ref)
        return await self._mark_submitted(record, receipt.submission_ref)

    async def _mark_submitted(self, record: PaymentRecord, submission_ref: str) -> ReconcileOutcome:
        async with self._ledger() as ledger:
            await ledger.transition(
                record.id,
                PaymentStatus.SUBMITTED,
                TransitionEvidence(submission_ref=submission_ref, submitted_at=self._clock()),
            )
        return ReconcileOutcome.SUBMITTED

    async def _defer(
        self, record: PaymentRecord, exc: RetryableNetworkError, counted: bool = True
    ) -> ReconcileOutcome:
        delay = self.backoff_delay(record.attempt_count)
        attempts = record.attempt_count + 1 if counted else record.attempt_count
        escalate = counted and attempts >= self._settings.max_attempts
        reason = f"{attempts} failed submit attempts"

        # The counted attempt and its escalation commit together.
        async with self._ledger() as ledger:
            updated = await ledger.record_attempt(
                record.id,
                delay_seconds=delay,
                error=exc.message,
                unknown_outcome=exc.unknown_outcome,
                counted=counted,
            )
            if escalate:
                await ledger.escalate(record.id, reason)
        logger.warning(
            "reconciliation.submit_deferred",
            record_id=str(record.id),
            attempt=updated.attempt_count,
            counted=counted,
            unknown_outcome=exc.unknown_outcome,
            retry_in=delay,
        )
        if escalate:
            self._log_escalation(updated, reason)
            return ReconcileOutcome.NEEDS_REVIEW
        return ReconcileOutcome.DEFERRED

    async def _poll(self, record: PaymentRecord) -> ReconcileOutcome:
        log = logger.bind(record_id=str(record.id), submission_ref=record.submission_ref)
        try:
            finality = await self._call(self._client.query_finality(record.submission_ref))
        except RetryableNetworkError as exc:
            log.warning("reconciliation.poll_failed", error=exc.message)
            return await self._still_waiting(record)

        match finality.state:
            case FinalityState.CONFIRMED:
                moved = finality.amount if finality.amount is not None else record.amount
                async with self._ledger() as ledger:
                    await ledger.transition(
                        record.id,
                        PaymentStatus.CONFIRMED,
                        TransitionEvidence(
                            confirmed_at=self._clock(),
                            confirmed_amount=moved,
                            ledger_time=finality.ledger_time,
                        ),
                    )
                log.info("reconciliation.confirmed", amount=moved)
                return ReconcileOutcome.CONFIRMED
            case FinalityState.FAILED:
                log.warning(
                    "reconciliation.failed",
                    reason=finality.reason,
                    retryable=finality.retryable,
                )
                evidence = TransitionEvidence(
                    failure_reason=finality.reason or "failed",
                    failure_retryable=finality.retryable,
                )
                if finality.retryable:
                    return await self._retry(record, evidence)
                async with self._ledger() as ledger:
                    await ledger.transition(record.id, PaymentStatus.FAILED, evidence)
                return ReconcileOutcome.FAILED
            case FinalityState.PENDING | FinalityState.UNKNOWN:
                return await self._still_waiting(record)
        return ReconcileOutcome.AWAITING_FINALITY

    async def _still_waiting(self, record: PaymentRecord) -> ReconcileOutcome:
        """Inconclusive poll: stamp it, and flag (never fail) records past staleness."""
        now = self._clock()
        stale = record.submitted_at is not None and now - record.submitted_at > timedelta(
            seconds=self._settings.max_staleness_seconds
        )
        async with self._ledger() as ledger:
            await ledger.mark_checked(record.id)
            if stale and not record.needs_review:
                await ledger.flag_for_review(
                    record.id,
                    f"no finality {self._settings.max_staleness_seconds}s after submission",
                )
                logger.warning("reconciliation.stale", record_id=str(record.id))
                return ReconcileOutcome.NEEDS_REVIEW
        return ReconcileOutcome.AWAITING_FINALITY

    async def _retry(self, record: PaymentRecord, evidence: TransitionEvidence) -> ReconcileOutcome:
        """Fail a retryable attempt and supersede it, or escalate the chain.

        The failure and its follow-up share one transaction: a retryable
        failure is never committed without a successor or an escalation.
        """
        failures = record.attempt_count + 1
        escalate = failures >= self._settings.max_attempts
        delay = self.backoff_delay(record.attempt_count)
        reason = f"{failures} failed attempts"

        async with self._ledger() as ledger:
            failed = await ledger.transition(record.id, PaymentStatus.FAILED, evidence)
            if escalate:
                await ledger.escalate(failed.id, reason)
            else:
                successor = await ledger.supersede(failed.id, delay_seconds=delay)

        if escalate:
            self._log_escalation(failed, reason)
            return ReconcileOutcome.NEEDS_REVIEW
        logger.info(
            "reconciliation.retry_scheduled",
            failed_record_id=str(failed.id),
            record_id=str(successor.id),
            attempt=successor.attempt_count,
            retry_in=delay,
        )
        return ReconcileOutcome.RETRY_SCHEDULED

    @staticmethod
    def _log_escalation(record: PaymentRecord, reason: str) -> None:
        logger.error(
            "reconciliation.escalated",
            record_id=str(record.id),
            agreement_id=str(record.agreement_id),
            chain_id=str(record.chain_id),
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Discrepancy detection
    # ------------------------------------------------------------------

    async def check_balances(self) -> list[BalanceDivergence]:
        """Compare quiet active agreements with the ledger.

        An agreement with in-flight records is skipped: its balances are
        allowed to disagree until those records settle. A mismatch is only
        reported once it has persisted for one poll interval.
        """
        views: list[_AgreementView] = []
        async with self._session_factory() as session:
            ledger = self._make_ledger(session)
            for agreement in await AgreementRepository(session).list_reconcilable():
                if await ledger.in_flight_count(agreement.id):
                    continue
                views.append(
                    _AgreementView(
                        id=agreement.id,
                        contract_ref=agreement.contract_ref,
                        local_balance=await ledger.confirmed_balance(agreement.id),
                    )
                )

        divergences: list[BalanceDivergence] = []
        for view in views:
            if self.stopping:
                break
            try:
                snapshot = await self._call(self._client.read_contract(view.contract_ref))
            except RetryableNetworkError as exc:
                logger.warning(
                    "reconciliation.balance_read_failed",
                    agreement_id=str(view.id),
                    error=exc.message,
                )
                continue

            if snapshot.status in _MIRRORED_STATUSES:
                await self._mirror_status(view.id, snapshot.status, snapshot.balance)
                continue

            divergence = await self._compare(view, snapshot.balance)
            if divergence is not None:
                divergences.append(divergence)
        return divergences

    async def _compare(self, view: _AgreementView, ledger_balance: int) -> BalanceDivergence | None:
        now = self._clock()
        async with self._tx() as session:
            agreements = AgreementRepository(session)
            agreement = await agreements.get_by_id(view.id, for_update=True)
            if agreement is None:
                return None

            if ledger_balance == view.local_balance:
                if agreement.mismatch_since is not None:
                    await agreements.set_mismatch_since(agreement, None)
                    logger.info("reconciliation.balance_mismatch_cleared", agreement_id=str(view.id))
                return None

            if agreement.mismatch_since is None:
                await agreements.set_mismatch_since(agreement, now)
                logger.info(
                    "reconciliation.balance_mismatch_observed",
                    agreement_id=str(view.id),
                    local_balance=view.local_balance,
                    ledger_balance=ledger_balance,
                )
                return None

            if now - agreement.mismatch_since < timedelta(seconds=self._settings.poll_interval_seconds):
                return None

            divergence = BalanceDivergence(
                agreement_id=view.id,
                local_balance=view.local_balance,
                ledger_balance=ledger_balance,
                detected_at=now,
            )
            logger.error(
                "reconciliation.balance_divergence",
                agreement_id=str(view.id),
                local_balance=view.local_balance,
                ledger_balance=ledger_balance,
                since=agreement.mismatch_since.isoformat(),
            )
            if not agreement.needs_review:
                error = divergence.to_error()
                await agreements.flag_for_review(agreement, error.message)
                await PaymentEventRepository(session).record(
                    agreement_id=agreement.id,
                    event_type=EventType.BALANCE_DIVERGENCE,
                    old_status=agreement.status,
                    new_status=agreement.status,
                    amount=ledger_balance - view.local_balance,
                    metadata={
                        "local_balance": view.local_balance,
                        "ledger_balance": ledger_balance,
                        "mismatch_since": agreement.mismatch_since.isoformat(),
                    },
                    created_at=now,
                )
            return divergence

    async def _mirror_status(self, agreement_id: uuid.UUID, ledger_status: str, balance: int) -> None:
        event_name, event_type, notify = _MIRRORED_STATUSES[ledger_status]
        async with self._tx() as session:
            agreements = AgreementRepository(session)
            agreement = await agreements.get_by_id(agreement_id, for_update=True)
            if agreement is None or agreement.status == ledger_status:
                return
            old_status = agreement.status
            sm = EscrowContractStateMachine(current_status=old_status)
            try:
                getattr(sm, event_name)()
            except TransitionNotAllowed as err:
                logger.error(
                    "reconciliation.status_mirror_rejected",
                    agreement_id=str(agreement_id),
                    local_status=old_status,
                    ledger_status=ledger_status,
                )
                raise InvalidStateTransitionError(old_status, ledger_status) from err

            await agreements.update_status(agreement, AgreementStatus(ledger_status))
            await PaymentEventRepository(session).record(
                agreement_id=agreement.id,
                event_type=event_type,
                old_status=old_status,
                new_status=ledger_status,
                amount=balance,
                metadata={"source": "ledger"},
                notify=notify,
                created_at=self._clock(),
            )
        logger.info(
            "reconciliation.status_mirrored",
            agreement_id=str(agreement_id),
            old_status=old_status,
            new_status=ledger_status,
        )

    # ------------------------------------------------------------------
    # Notification outbox
    # ------------------------------------------------------------------

    async def dispatch_notifications(self) -> int:
        """Deliver queued outcomes; anything that fails stays queued for the next cycle."""
        async with self._ledger() as ledger:
            pending = await ledger.pending_notifications()

        delivered = 0
        for evt in pending:
            try:
                await self._notifier.notify(
                    evt.agreement_id,
                    evt.record_id,
                    evt.new_status,
                    evt.amount or 0,
                )
            except Exception as exc:
                logger.warning(
                    "notification.delivery_failed",
                    event_id=str(evt.id),
                    error=str(exc),
                )
                continue
            async with self._ledger() as ledger:
                if await ledger.mark_notified(evt.id):
                    delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        """Await a ledger call with the configured timeout.

        A timeout is an unknown outcome, not a failure.
        """
        try:
            async with asyncio.timeout(self._settings.ledger_timeout_seconds):
                return await awaitable
        except TimeoutError as exc:
            raise RetryableNetworkError(
                f"Ledger call exceeded {self._settings.ledger_timeout_seconds}s",
                unknown_outcome=True,
            ) from exc

    def _make_ledger(self, session: AsyncSession) -> PaymentLedger:
        return PaymentLedger(session, clock=self._clock, settings=self._settings)

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session, session.begin():
            yield session

    @asynccontextmanager
    async def _ledger(self) -> AsyncIterator[PaymentLedger]:
        async with self._tx() as session:
            yield self._make_ledger(session)


def _build_transaction(record: PaymentRecord, transaction_id: str, contract_ref: str) -> LedgerTransaction:
    match PaymentDirection(record.direction):
        case PaymentDirection.DEPOSIT:
            return LedgerTransaction(
                transaction_id=transaction_id,
                kind=TransactionKind.DEPOSIT,
                contract_ref=contract_ref,
                actor=record.payer_id,
                amount=record.amount,
            )
        case PaymentDirection.WITHDRAWAL:
            return LedgerTransaction(
                transaction_id=transaction_id,
                kind=TransactionKind.WITHDRAW,
                contract_ref=contract_ref,
                actor=record.payer_id,
                params={"requested_amount": record.amount},
            )
