"""Tests for AgreementService: lifecycle on the ledger, payment initiation, queries."""

from __future__ import annotations

import uuid

import pytest

from rent_settlement.domain.enums import AgreementStatus, DisplayStatus, EventType, PaymentDirection
from rent_settlement.domain.exceptions import (
    AgreementNotFoundError,
    DuplicateSubmissionError,
    FatalLedgerRejectionError,
    InvalidAmountError,
    InvalidStateTransitionError,
    RetryableNetworkError,
    UnauthorizedError,
)
from rent_settlement.ledger.simulated import SimulatedLedger
from rent_settlement.services.agreement_service import AgreementService

LANDLORD = "landlord-1"
TENANTS = ["tenant-1", "tenant-2"]


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_is_uninitialized(self, service: AgreementService) -> None:
        agreement = await service.create_agreement(LANDLORD, ["tenant-1", "tenant-1", "tenant-2"], 1000)

        assert agreement.status == AgreementStatus.UNINITIALIZED
        assert agreement.tenant_ids == TENANTS
        assert agreement.contract_ref == f"escrow:{agreement.id}"
        status = await service.get_agreement_status(agreement.id)
        assert status.allowed_events == ["initialize"]
        assert status.confirmed_balance == 0

    @pytest.mark.asyncio
    async def test_requires_tenants(self, service: AgreementService) -> None:
        with pytest.raises(UnauthorizedError):
            await service.create_agreement(LANDLORD, [], 1000)

    @pytest.mark.asyncio
    async def test_landlord_cannot_be_tenant(self, service: AgreementService) -> None:
        with pytest.raises(UnauthorizedError):
            await service.create_agreement(LANDLORD, [LANDLORD], 1000)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rent", [0, -100])
    async def test_rent_must_be_positive(self, service: AgreementService, rent: int) -> None:
        with pytest.raises(InvalidAmountError):
            await service.create_agreement(LANDLORD, TENANTS, rent)

    @pytest.mark.asyncio
    async def test_unknown_agreement(self, service: AgreementService) -> None:
        with pytest.raises(AgreementNotFoundError):
            await service.get_agreement_status(uuid.uuid4())


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_activate_initializes_contract(self, service: AgreementService, ledger: SimulatedLedger) -> None:
        agreement = await service.create_agreement(LANDLORD, TENANTS, 1000)
        activated = await service.activate_agreement(agreement.id, LANDLORD)

        assert activated.status == AgreementStatus.ACTIVE
        contract = ledger.contract(agreement.contract_ref)
        assert contract.landlord == LANDLORD
        assert contract.tenants == tuple(TENANTS)
        assert contract.rent_amount == 1000

    @pytest.mark.asyncio
    async def test_only_landlord_activates(self, service: AgreementService) -> None:
        agreement = await service.create_agreement(LANDLORD, TENANTS, 1000)
        with pytest.raises(UnauthorizedError):
            await service.activate_agreement(agreement.id, "tenant-1")

    @pytest.mark.asyncio
    async def test_activate_twice_rejected(self, service: AgreementService, active_agreement) -> None:
        with pytest.raises(InvalidStateTransitionError):
            await service.activate_agreement(active_agreement.id, LANDLORD)

    @pytest.mark.asyncio
    async def test_activation_retry_after_timeout_reuses_transaction(self, service: AgreementService, ledger: SimulatedLedger) -> None:
        agreement = await service.create_agreement(LANDLORD, TENANTS, 1000)
        ledger.finality_polls = 1_000

        with pytest.raises(RetryableNetworkError) as exc_info:
            await service.activate_agreement(agreement.id, LANDLORD)
        assert exc_info.value.unknown_outcome is True
        assert (await service.get_agreement_status(agreement.id)).status == "uninitialized"

        await ledger.finalize_all()
        activated = await service.activate_agreement(agreement.id, LANDLORD)
        assert activated.status == AgreementStatus.ACTIVE
        assert len(ledger.applied) == 1

    @pytest.mark.asyncio
    async def test_tenant_raises_dispute(self, service: AgreementService, ledger: SimulatedLedger, active_agreement) -> None:
        disputed = await service.raise_dispute(active_agreement.id, "tenant-2", reason="heating broken")

        assert disputed.status == AgreementStatus.DISPUTED
        assert ledger.contract(active_agreement.contract_ref).get_status() == AgreementStatus.DISPUTED
        events = await service.get_events(active_agreement.id)
        (dispute,) = [e for e in events if e.event_type == EventType.AGREEMENT_DISPUTED]
        assert dispute.notify is True
        assert dispute.metadata_json == {"reason": "heating broken"}

    @pytest.mark.asyncio
    async def test_outsider_cannot_dispute(self, service: AgreementService, active_agreement) -> None:
        with pytest.raises(UnauthorizedError):
            await service.raise_dispute(active_agreement.id, "stranger")

    @pytest.mark.asyncio
    async def test_settle_rejected_while_funds_remain(self, service: AgreementService, engine, active_agreement) -> None:
        await service.initiate_payment(active_agreement.id, "tenant-1", 1000, PaymentDirection.DEPOSIT)
        await engine.run_once()
        await engine.run_once()

        with pytest.raises(FatalLedgerRejectionError):
            await service.settle_agreement(active_agreement.id, LANDLORD)

        await service.initiate_payment(active_agreement.id, LANDLORD, 1000, PaymentDirection.WITHDRAWAL)
        await engine.run_once()
        await engine.run_once()

        settled = await service.settle_agreement(active_agreement.id, LANDLORD)
        assert settled.status == AgreementStatus.SETTLED

    @pytest.mark.asyncio
    async def test_settle_after_failed_finality_uses_new_transaction(
        self, service: AgreementService, engine, ledger: SimulatedLedger, active_agreement
    ) -> None:
        await service.initiate_payment(active_agreement.id, "tenant-1", 1000, PaymentDirection.DEPOSIT)
        await engine.run_once()  # submitted, not yet final

        # Passes the dry run at balance 0, then finalizes behind the deposit.
        with pytest.raises(FatalLedgerRejectionError) as exc_info:
            await service.settle_agreement(active_agreement.id, LANDLORD)
        assert exc_info.value.reason == "INVALID_AMOUNT"

        await engine.run_once()
        await service.initiate_payment(active_agreement.id, LANDLORD, 1000, PaymentDirection.WITHDRAWAL)
        await engine.run_once()
        await engine.run_once()
        assert ledger.contract(active_agreement.contract_ref).get_balance() == 0

        settled = await service.settle_agreement(active_agreement.id, LANDLORD)

        assert settled.status == AgreementStatus.SETTLED
        assert ledger.contract(active_agreement.contract_ref).get_status() == AgreementStatus.SETTLED
        events = await service.get_events(active_agreement.id)
        (rejected,) = [e for e in events if e.event_type == EventType.LIFECYCLE_REJECTED]
        assert rejected.metadata_json["kind"] == "settle"
        assert rejected.metadata_json["transaction_id"] not in ledger.applied

    @pytest.mark.asyncio
    async def test_archive_only_closed_agreements(self, service: AgreementService, active_agreement) -> None:
        with pytest.raises(InvalidStateTransitionError):
            await service.archive_agreement(active_agreement.id, LANDLORD)

        await service.raise_dispute(active_agreement.id, LANDLORD)
        with pytest.raises(UnauthorizedError):
            await service.archive_agreement(active_agreement.id, "tenant-1")

        archived = await service.archive_agreement(active_agreement.id, LANDLORD)
        assert archived.archived_at is not None
        assert (await service.get_agreement_status(active_agreement.id)).archived is True


class TestInitiatePayment:
    @pytest.mark.asyncio
    async def test_requires_active_agreement(self, service: AgreementService) -> None:
        agreement = await service.create_agreement(LANDLORD, TENANTS, 1000)
        with pytest.raises(InvalidStateTransitionError):
            await service.initiate_payment(agreement.id, "tenant-1", 1000, PaymentDirection.DEPOSIT)

    @pytest.mark.asyncio
    async def test_only_tenants_deposit(self, service: AgreementService, active_agreement) -> None:
        with pytest.raises(UnauthorizedError):
            await service.initiate_payment(active_agreement.id, LANDLORD, 1000, PaymentDirection.DEPOSIT)

    @pytest.mark.asyncio
    async def test_only_landlord_withdraws(self, service: AgreementService, active_agreement) -> None:
        with pytest.raises(UnauthorizedError):
            await service.initiate_payment(active_agreement.id, "tenant-1", 1000, "withdrawal")

    @pytest.mark.asyncio
    async def test_double_click_is_rejected(self, service: AgreementService, active_agreement) -> None:
        await service.initiate_payment(active_agreement.id, "tenant-1", 1000, PaymentDirection.DEPOSIT)
        with pytest.raises(DuplicateSubmissionError):
            await service.initiate_payment(active_agreement.id, "tenant-1", 1000, PaymentDirection.DEPOSIT)

    @pytest.mark.asyncio
    async def test_history_is_pending_until_reconciled(self, service: AgreementService, engine, active_agreement) -> None:
        record = await service.initiate_payment(active_agreement.id, "tenant-1", 1000, PaymentDirection.DEPOSIT)

        (view,) = await service.get_payment_history(active_agreement.id)
        assert view.record_id == record.id
        assert view.status == DisplayStatus.PENDING
        assert (await service.get_agreement_status(active_agreement.id)).in_flight == 1

        await engine.run_once()
        (view,) = await service.get_payment_history(active_agreement.id)
        assert view.status == DisplayStatus.SUBMITTED
        assert view.submission_ref is not None
