"""Pydantic API schemas."""

from rent_settlement.schemas.agreement import (
    ActorRequest,
    AgreementResponse,
    AgreementStatusResponse,
    CreateAgreementRequest,
    HealthResponse,
    InitiatePaymentRequest,
    PaymentEventResponse,
    PaymentHistoryItem,
    PaymentRecordResponse,
    RaiseDisputeRequest,
)

__all__ = [
    "ActorRequest",
    "AgreementResponse",
    "AgreementStatusResponse",
    "CreateAgreementRequest",
    "HealthResponse",
    "InitiatePaymentRequest",
    "PaymentEventResponse",
    "PaymentHistoryItem",
    "PaymentRecordResponse",
    "RaiseDisputeRequest",
]
