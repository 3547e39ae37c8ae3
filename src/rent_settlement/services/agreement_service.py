"""Agreement Service — agreement lifecycle and the upward query surface.

This is the application layer the HTTP routes call into. It coordinates:
    - EscrowContractStateMachine (lifecycle guard)
    - the LedgerClient (initialize / settle / dispute are on-ledger operations)
    - PaymentLedger (payment initiation and balance/history reads)
    - the history log (agreement-level events)

Lifecycle operations submit one transaction and wait, bounded, for its
finality before answering. Their transaction ids are derived from
(agreement, operation), so a client retrying after a timeout resubmits
the same transaction and the ledger deduplicates it.

Payments are different: initiate_payment() only records a pending row.
The reconciliation workers take it from there.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from rent_settlement.config import get_settings
from rent_settlement.domain.enums import (
    AgreementStatus,
    DisplayStatus,
    EventType,
    FinalityState,
    PaymentDirection,
    PaymentStatus,
    TransactionKind,
)
from rent_settlement.domain.exceptions import (
    AgreementNotFoundError,
    FatalLedgerRejectionError,
    InvalidAmountError,
    InvalidStateTransitionError,
    RetryableNetworkError,
    UnauthorizedError,
)
from rent_settlement.domain.ledger_protocol import (
    LedgerTransaction,
    make_lifecycle_transaction_id,
)
from rent_settlement.domain.state_machine import EscrowContractStateMachine
from rent_settlement.infrastructure.database.orm_models import Agreement
from rent_settlement.infrastructure.database.repositories import (
    AgreementRepository,
    PaymentEventRepository,
)
from rent_settlement.ledger.finality import await_finality
from rent_settlement.logging_config import get_logger
from rent_settlement.services.payment_ledger import Clock, PaymentLedger, utcnow

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from rent_settlement.config import Settings
    from rent_settlement.domain.ledger_protocol import Finality, LedgerClient
    from rent_settlement.infrastructure.database.orm_models import PaymentRecord

logger = get_logger(__name__)


@dataclass(frozen=True)
class AgreementStatusView:
    agreement_id: uuid.UUID
    contract_ref: str
    landlord_id: str
    tenant_ids: list[str]
    rent_amount: int
    status: str
    needs_review: bool
    review_reason: str | None
    confirmed_balance: int
    in_flight: int
    archived: bool
    allowed_events: list[str]


@dataclass(frozen=True)
class PaymentView:
    """One logical payment as the payer sees it: the latest attempt of its chain."""

    record_id: uuid.UUID
    chain_id: uuid.UUID
    payer_id: str
    direction: str
    amount: int
    status: DisplayStatus
    attempts: int
    submission_ref: str | None
    confirmed_amount: int | None
    failure_reason: str | None
    created_at: datetime
    confirmed_at: datetime | None


def display_status(record: PaymentRecord) -> DisplayStatus:
    """Collapse internal state into what a user is shown.

    A failed record whose failure was retryable and that has no successor
    was escalated rather than retried, so it reads as needs_review.
    """
    status = PaymentStatus(record.status)
    if status == PaymentStatus.CONFIRMED:
        return DisplayStatus.CONFIRMED
    if record.needs_review or (status == PaymentStatus.FAILED and record.failure_retryable):
        return DisplayStatus.NEEDS_REVIEW
    return DisplayStatus(status)


class AgreementService:
    """Manages rent agreements and answers queries about them."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger_client: LedgerClient,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = ledger_client
        self._clock = clock or utcnow
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_agreement(
        self,
        landlord_id: str,
        tenant_ids: list[str],
        rent_amount: int,
    ) -> Agreement:
        """Record a new agreement in `uninitialized` state (nothing on the ledger yet)."""
        tenants = list(dict.fromkeys(tenant_ids))
        if not tenants:
            raise UnauthorizedError(landlord_id, "create an agreement without tenants")
        if landlord_id in tenants:
            raise UnauthorizedError(landlord_id, "be both landlord and tenant")
        if isinstance(rent_amount, bool) or not isinstance(rent_amount, int) or rent_amount <= 0:
            raise InvalidAmountError(rent_amount)

        agreement_id = uuid.uuid4()
        now = self._clock()
        async with self._tx() as session:
            agreement = await AgreementRepository(session).create(
                Agreement(
                    id=agreement_id,
                    landlord_id=landlord_id,
                    tenant_ids=tenants,
                    rent_amount=rent_amount,
                    contract_ref=f"escrow:{agreement_id}",
                    status=AgreementStatus.UNINITIALIZED.value,
                    needs_review=False,
                    created_at=now,
                    updated_at=now,
                )
            )
            await PaymentEventRepository(session).record(
                agreement_id=agreement.id,
                event_type=EventType.AGREEMENT_CREATED,
                old_status=None,
                new_status=AgreementStatus.UNINITIALIZED.value,
                actor=landlord_id,
                amount=rent_amount,
                metadata={"tenants": tenants},
                created_at=now,
            )

        logger.info("agreement.created", agreement_id=str(agreement_id), rent=rent_amount)
        return agreement

    async def activate_agreement(self, agreement_id: uuid.UUID, caller: str) -> Agreement:
        """Initialize the escrow contract on the ledger and mark the agreement active."""
        agreement = await self._get_agreement_or_raise(agreement_id)
        if caller != agreement.landlord_id:
            raise UnauthorizedError(caller, "activate the agreement")
        self._guard(agreement, "initialize")

        await self._run_on_ledger(
            agreement,
            TransactionKind.INITIALIZE,
            actor=caller,
            params={"tenants": list(agreement.tenant_ids), "rent_amount": agreement.rent_amount},
        )
        return await self._apply_status(
            agreement_id, "initialize", AgreementStatus.ACTIVE, EventType.AGREEMENT_ACTIVATED, caller
        )

    async def raise_dispute(
        self,
        agreement_id: uuid.UUID,
        actor: str,
        reason: str | None = None,
    ) -> Agreement:
        """Freeze the escrow in `disputed` for human resolution."""
        agreement = await self._get_agreement_or_raise(agreement_id)
        if actor != agreement.landlord_id and actor not in agreement.tenant_ids:
            raise UnauthorizedError(actor, "raise a dispute")
        self._guard(agreement, "dispute")

        await self._run_on_ledger(agreement, TransactionKind.DISPUTE, actor=actor)
        return await self._apply_status(
            agreement_id,
            "dispute",
            AgreementStatus.DISPUTED,
            EventType.AGREEMENT_DISPUTED,
            actor,
            metadata={"reason": reason} if reason else None,
            notify=True,
        )

    async def settle_agreement(self, agreement_id: uuid.UUID, caller: str) -> Agreement:
        """Close a fully paid-out agreement. The ledger rejects it while funds remain."""
        agreement = await self._get_agreement_or_raise(agreement_id)
        if caller != agreement.landlord_id:
            raise UnauthorizedError(caller, "settle the agreement")
        self._guard(agreement, "settle")

        await self._run_on_ledger(agreement, TransactionKind.SETTLE, actor=caller)
        return await self._apply_status(
            agreement_id, "settle", AgreementStatus.SETTLED, EventType.AGREEMENT_SETTLED, caller
        )

    async def archive_agreement(self, agreement_id: uuid.UUID, caller: str) -> Agreement:
        """Hide a closed agreement from active views. Rows are never deleted."""
        async with self._tx() as session:
            agreements = AgreementRepository(session)
            agreement = await agreements.get_by_id(agreement_id, for_update=True)
            if agreement is None:
                raise AgreementNotFoundError(str(agreement_id))
            if caller != agreement.landlord_id:
                raise UnauthorizedError(caller, "archive the agreement")
            if agreement.status == AgreementStatus.ACTIVE.value:
                raise InvalidStateTransitionError(agreement.status, "archived")
            if agreement.archived_at is None:
                now = self._clock()
                await agreements.archive(agreement, now)
                await PaymentEventRepository(session).record(
                    agreement_id=agreement.id,
                    event_type=EventType.AGREEMENT_ARCHIVED,
                    old_status=agreement.status,
                    new_status=agreement.status,
                    actor=caller,
                    created_at=now,
                )
                logger.info("agreement.archived", agreement_id=str(agreement_id))
        return agreement

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def initiate_payment(
        self,
        agreement_id: uuid.UUID,
        payer_id: str,
        amount: int,
        direction: PaymentDirection | str,
    ) -> PaymentRecord:
        """Record a pending payment after checking the agreement and the payer's rights.

        Raises:
            AgreementNotFoundError, InvalidStateTransitionError (agreement not active),
            UnauthorizedError, InvalidAmountError, DuplicateSubmissionError.
        """
        direction = PaymentDirection(direction)
        async with self._ledger() as ledger:
            agreement = await ledger.get_agreement(agreement_id)
            if agreement.status != AgreementStatus.ACTIVE.value or agreement.archived_at is not None:
                raise InvalidStateTransitionError(agreement.status, f"{direction.value} payment")

            match direction:
                case PaymentDirection.DEPOSIT:
                    if payer_id not in agreement.tenant_ids:
                        raise UnauthorizedError(payer_id, "deposit into this agreement")
                case PaymentDirection.WITHDRAWAL:
                    if payer_id != agreement.landlord_id:
                        raise UnauthorizedError(payer_id, "withdraw from this agreement")

            record = await ledger.create(agreement_id, payer_id, direction, amount)
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_agreement_status(self, agreement_id: uuid.UUID) -> AgreementStatusView:
        async with self._ledger() as ledger:
            agreement = await ledger.get_agreement(agreement_id)
            balance = await ledger.confirmed_balance(agreement_id)
            in_flight = await ledger.in_flight_count(agreement_id)

        sm = EscrowContractStateMachine(current_status=agreement.status)
        return AgreementStatusView(
            agreement_id=agreement.id,
            contract_ref=agreement.contract_ref,
            landlord_id=agreement.landlord_id,
            tenant_ids=list(agreement.tenant_ids),
            rent_amount=agreement.rent_amount,
            status=agreement.status,
            needs_review=agreement.needs_review,
            review_reason=agreement.review_reason,
            confirmed_balance=balance,
            in_flight=in_flight,
            archived=agreement.archived_at is not None,
            allowed_events=sm.get_allowed_events(),
        )

    async def get_payment_history(self, agreement_id: uuid.UUID) -> list[PaymentView]:
        """One entry per logical payment, oldest first. Superseded attempts are folded in."""
        async with self._ledger() as ledger:
            await ledger.get_agreement(agreement_id)
            records = await ledger.latest_for_agreement(agreement_id)

        chains: dict[uuid.UUID, list[PaymentRecord]] = {}
        for record in records:
            chains.setdefault(record.chain_id, []).append(record)

        views = []
        for attempts in chains.values():
            first, latest = attempts[0], attempts[-1]
            views.append(
                PaymentView(
                    record_id=latest.id,
                    chain_id=latest.chain_id,
                    payer_id=latest.payer_id,
                    direction=latest.direction,
                    amount=latest.amount,
                    status=display_status(latest),
                    attempts=len(attempts),
                    submission_ref=latest.submission_ref,
                    confirmed_amount=latest.confirmed_amount,
                    failure_reason=latest.failure_reason,
                    created_at=first.created_at,
                    confirmed_at=latest.confirmed_at,
                )
            )
        return views

    async def get_events(self, agreement_id: uuid.UUID) -> list:
        """Full audit trail for an agreement."""
        async with self._tx() as session:
            await self._require_exists(session, agreement_id)
            return await PaymentEventRepository(session).get_by_agreement(agreement_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _run_on_ledger(
        self,
        agreement: Agreement,
        kind: TransactionKind,
        actor: str,
        params: dict[str, Any] | None = None,
    ) -> Finality:
        attempt = await self._rejected_attempts(agreement.id, kind)
        transaction = LedgerTransaction(
            transaction_id=make_lifecycle_transaction_id(agreement.id, kind, attempt),
            kind=kind,
            contract_ref=agreement.contract_ref,
            actor=actor,
            params=params or {},
        )
        try:
            async with asyncio.timeout(self._settings.ledger_timeout_seconds):
                receipt = await self._client.submit(transaction)
            finality = await await_finality(
                self._client,
                receipt.submission_ref,
                interval=self._settings.lifecycle_poll_interval_seconds,
                timeout=self._settings.lifecycle_finality_timeout_seconds,
            )
        except TimeoutError as exc:
            logger.warning(
                "agreement.ledger_timeout",
                agreement_id=str(agreement.id),
                kind=kind.value,
                transaction_id=transaction.transaction_id,
            )
            raise RetryableNetworkError(
                f"{kind.value} not final yet; retry to resume",
                unknown_outcome=True,
            ) from exc

        if finality.state == FinalityState.FAILED:
            reason = finality.reason or "rejected"
            await self._record_rejection(agreement, transaction, reason)
            raise FatalLedgerRejectionError(
                f"Ledger rejected {kind.value}: {finality.reason}",
                reason=reason,
            )
        logger.info(
            "agreement.ledger_confirmed",
            agreement_id=str(agreement.id),
            kind=kind.value,
        )
        return finality

    async def _rejected_attempts(self, agreement_id: uuid.UUID, kind: TransactionKind) -> int:
        async with self._tx() as session:
            events = await PaymentEventRepository(session).get_by_agreement(agreement_id)
        return sum(
            1
            for event in events
            if event.event_type == EventType.LIFECYCLE_REJECTED
            and (event.metadata_json or {}).get("kind") == kind.value
        )

    async def _record_rejection(
        self, agreement: Agreement, transaction: LedgerTransaction, reason: str
    ) -> None:
        """Retire a lifecycle transaction id the ledger finalized as FAILED."""
        async with self._tx() as session:
            await PaymentEventRepository(session).record(
                agreement_id=agreement.id,
                event_type=EventType.LIFECYCLE_REJECTED,
                old_status=agreement.status,
                new_status=agreement.status,
                actor=transaction.actor,
                metadata={
                    "kind": transaction.kind.value,
                    "transaction_id": transaction.transaction_id,
                    "reason": reason,
                },
                created_at=self._clock(),
            )
        logger.warning(
            "agreement.ledger_rejected",
            agreement_id=str(agreement.id),
            kind=transaction.kind.value,
            transaction_id=transaction.transaction_id,
            reason=reason,
        )

    async def _apply_status(
        self,
        agreement_id: uuid.UUID,
        event_name: str,
        new_status: AgreementStatus,
        event_type: EventType,
        actor: str,
        metadata: dict | None = None,
        notify: bool = False,
    ) -> Agreement:
        async with self._tx() as session:
            agreements = AgreementRepository(session)
            agreement = await agreements.get_by_id(agreement_id, for_update=True)
            if agreement is None:
                raise AgreementNotFoundError(str(agreement_id))
            if agreement.status == new_status.value:
                # The reconciliation pass mirrored it from the ledger first.
                return agreement

            old_status = agreement.status
            self._guard(agreement, event_name)
            await agreements.update_status(agreement, new_status)
            balance = await PaymentLedger(session, self._clock, self._settings).confirmed_balance(agreement_id)
            await PaymentEventRepository(session).record(
                agreement_id=agreement.id,
                event_type=event_type,
                old_status=old_status,
                new_status=new_status.value,
                actor=actor,
                amount=balance,
                metadata=metadata,
                notify=notify,
                created_at=self._clock(),
            )

        logger.info(
            "agreement.status_changed",
            agreement_id=str(agreement_id),
            old_status=old_status,
            new_status=new_status.value,
        )
        return agreement

    def _guard(self, agreement: Agreement, event_name: str) -> None:
        """Raise InvalidStateTransitionError unless the lifecycle event may fire."""
        sm = EscrowContractStateMachine(current_status=agreement.status)
        try:
            getattr(sm, event_name)()
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(agreement.status, event_name) from err

    async def _get_agreement_or_raise(self, agreement_id: uuid.UUID) -> Agreement:
        async with self._session_factory() as session:
            return await self._require_exists(session, agreement_id)

    @staticmethod
    async def _require_exists(session: AsyncSession, agreement_id: uuid.UUID) -> Agreement:
        agreement = await AgreementRepository(session).get_by_id(agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(str(agreement_id))
        return agreement

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session, session.begin():
            yield session

    @asynccontextmanager
    async def _ledger(self) -> AsyncIterator[PaymentLedger]:
        async with self._tx() as session:
            yield PaymentLedger(session, clock=self._clock, settings=self._settings)
