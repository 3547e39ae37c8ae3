"""Pydantic schemas for the Agreements API.

Request/response shapes for the REST API. They are separate from the ORM
models and from the service-layer views so each boundary can change on
its own.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from rent_settlement.domain.enums import DisplayStatus, PaymentDirection

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateAgreementRequest(BaseModel):
    """Request body for registering a new rent agreement."""

    landlord_id: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Party that receives rent and may withdraw or settle",
        examples=["landlord-7"],
    )
    tenant_ids: list[str] = Field(
        ...,
        min_length=1,
        description="Parties allowed to deposit rent",
        examples=[["tenant-1", "tenant-2"]],
    )
    rent_amount: int = Field(
        ...,
        gt=0,
        description="Monthly rent in the smallest currency unit",
        examples=[1000],
    )


class ActorRequest(BaseModel):
    """Request body for operations that only need to know who is calling."""

    caller: str = Field(..., min_length=1, max_length=128)


class RaiseDisputeRequest(BaseModel):
    """Request body for raising a dispute against an agreement."""

    actor: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Landlord or tenant raising the dispute",
    )
    reason: str | None = Field(default=None, max_length=2000)


class InitiatePaymentRequest(BaseModel):
    """Request body for a deposit (tenant) or withdrawal (landlord)."""

    payer_id: str = Field(..., min_length=1, max_length=128)
    amount: int = Field(
        ...,
        gt=0,
        description="Amount in the smallest currency unit. A withdrawal moves the whole balance.",
    )
    direction: PaymentDirection = PaymentDirection.DEPOSIT


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class AgreementResponse(BaseModel):
    """Response schema for an agreement row."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    landlord_id: str
    tenant_ids: list[str]
    rent_amount: int
    contract_ref: str
    status: str
    needs_review: bool
    review_reason: str | None
    archived_at: datetime | None
    created_at: datetime
    updated_at: datetime


class AgreementStatusResponse(BaseModel):
    """Agreement status together with its confirmed balance."""

    model_config = ConfigDict(from_attributes=True)

    agreement_id: uuid.UUID
    contract_ref: str
    landlord_id: str
    tenant_ids: list[str]
    rent_amount: int
    status: str
    needs_review: bool
    review_reason: str | None
    confirmed_balance: int = Field(description="Sum of ledger-confirmed movements only")
    in_flight: int = Field(description="Payments still pending or submitted")
    archived: bool
    allowed_events: list[str] = Field(
        description="Lifecycle events that can fire from the current status"
    )


class PaymentRecordResponse(BaseModel):
    """A single payment attempt, as created."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    agreement_id: uuid.UUID
    chain_id: uuid.UUID
    payer_id: str
    direction: str
    amount: int
    status: str
    attempt_count: int
    created_at: datetime


class PaymentHistoryItem(BaseModel):
    """One logical payment in an agreement's history."""

    model_config = ConfigDict(from_attributes=True)

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


class PaymentEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    agreement_id: uuid.UUID
    record_id: uuid.UUID | None
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    amount: int | None
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    workers: str = "disabled"
