"""Rent agreement REST API routes.

Every handler delegates to AgreementService; none touches the ledger or
the database directly. Payment endpoints only record intent, so they
answer 202 and the payment moves on in the background.

Routes:
    POST   /api/v1/agreements                  — Register an agreement
    GET    /api/v1/agreements/{id}             — Status and confirmed balance
    POST   /api/v1/agreements/{id}/activate    — Initialize the escrow on the ledger
    POST   /api/v1/agreements/{id}/dispute     — Freeze the escrow
    POST   /api/v1/agreements/{id}/settle      — Close a paid-out escrow
    POST   /api/v1/agreements/{id}/archive     — Hide a closed agreement
    POST   /api/v1/agreements/{id}/payments    — Initiate a deposit or withdrawal
    GET    /api/v1/agreements/{id}/payments    — Payment history
    GET    /api/v1/agreements/{id}/events      — Audit trail
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from rent_settlement.api.deps import get_agreement_service
from rent_settlement.logging_config import get_logger
from rent_settlement.schemas.agreement import (
    ActorRequest,
    AgreementResponse,
    AgreementStatusResponse,
    CreateAgreementRequest,
    InitiatePaymentRequest,
    PaymentEventResponse,
    PaymentHistoryItem,
    PaymentRecordResponse,
    RaiseDisputeRequest,
)
from rent_settlement.services.agreement_service import AgreementService

router = APIRouter(prefix="/api/v1/agreements", tags=["Agreements"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=AgreementResponse,
    status_code=201,
    summary="Register a new rent agreement",
)
async def create_agreement(
    request: CreateAgreementRequest,
    svc: AgreementService = Depends(get_agreement_service),
) -> AgreementResponse:
    agreement = await svc.create_agreement(
        landlord_id=request.landlord_id,
        tenant_ids=request.tenant_ids,
        rent_amount=request.rent_amount,
    )
    return AgreementResponse.model_validate(agreement)


@router.get(
    "/{agreement_id}",
    response_model=AgreementStatusResponse,
    summary="Get agreement status and confirmed balance",
)
async def get_agreement(
    agreement_id: uuid.UUID,
    svc: AgreementService = Depends(get_agreement_service),
) -> AgreementStatusResponse:
    view = await svc.get_agreement_status(agreement_id)
    return AgreementStatusResponse.model_validate(view)


@router.post(
    "/{agreement_id}/activate",
    response_model=AgreementResponse,
    summary="Initialize the escrow contract (landlord only)",
)
async def activate_agreement(
    agreement_id: uuid.UUID,
    request: ActorRequest,
    svc: AgreementService = Depends(get_agreement_service),
) -> AgreementResponse:
    """Blocks until the ledger finalizes the initialization.

    A 503 with outcome_unknown=true means the call may have landed; calling
    again resumes the same ledger transaction.
    """
    agreement = await svc.activate_agreement(agreement_id, request.caller)
    return AgreementResponse.model_validate(agreement)


@router.post(
    "/{agreement_id}/dispute",
    response_model=AgreementResponse,
    summary="Raise a dispute (landlord or tenant)",
)
async def raise_dispute(
    agreement_id: uuid.UUID,
    request: RaiseDisputeRequest,
    svc: AgreementService = Depends(get_agreement_service),
) -> AgreementResponse:
    agreement = await svc.raise_dispute(agreement_id, request.actor, reason=request.reason)
    logger.info("api.dispute_raised", agreement_id=str(agreement_id), actor=request.actor)
    return AgreementResponse.model_validate(agreement)


@router.post(
    "/{agreement_id}/settle",
    response_model=AgreementResponse,
    summary="Settle a fully withdrawn agreement (landlord only)",
)
async def settle_agreement(
    agreement_id: uuid.UUID,
    request: ActorRequest,
    svc: AgreementService = Depends(get_agreement_service),
) -> AgreementResponse:
    agreement = await svc.settle_agreement(agreement_id, request.caller)
    return AgreementResponse.model_validate(agreement)


@router.post(
    "/{agreement_id}/archive",
    response_model=AgreementResponse,
    summary="Archive a closed agreement (landlord only)",
)
async def archive_agreement(
    agreement_id: uuid.UUID,
    request: ActorRequest,
    svc: AgreementService = Depends(get_agreement_service),
) -> AgreementResponse:
    agreement = await svc.archive_agreement(agreement_id, request.caller)
    return AgreementResponse.model_validate(agreement)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@router.post(
    "/{agreement_id}/payments",
    response_model=PaymentRecordResponse,
    status_code=202,
    summary="Initiate a deposit or withdrawal",
)
async def initiate_payment(
    agreement_id: uuid.UUID,
    request: InitiatePaymentRequest,
    svc: AgreementService = Depends(get_agreement_service),
) -> PaymentRecordResponse:
    """Record the payment as pending. Reconciliation submits and confirms it."""
    record = await svc.initiate_payment(
        agreement_id,
        payer_id=request.payer_id,
        amount=request.amount,
        direction=request.direction,
    )
    return PaymentRecordResponse.model_validate(record)


@router.get(
    "/{agreement_id}/payments",
    response_model=list[PaymentHistoryItem],
    summary="Payment history, one entry per logical payment",
)
async def get_payment_history(
    agreement_id: uuid.UUID,
    svc: AgreementService = Depends(get_agreement_service),
) -> list[PaymentHistoryItem]:
    views = await svc.get_payment_history(agreement_id)
    return [PaymentHistoryItem.model_validate(v) for v in views]


@router.get(
    "/{agreement_id}/events",
    response_model=list[PaymentEventResponse],
    summary="Audit trail",
)
async def get_events(
    agreement_id: uuid.UUID,
    svc: AgreementService = Depends(get_agreement_service),
) -> list[PaymentEventResponse]:
    events = await svc.get_events(agreement_id)
    return [PaymentEventResponse.model_validate(e) for e in events]
