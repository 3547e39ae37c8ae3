"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the agreement
service, the ledger client, and configuration.
"""

from __future__ import annotations

from fastapi import Depends, Request

from rent_settlement.config import Settings, get_settings
from rent_settlement.domain.ledger_protocol import LedgerClient
from rent_settlement.infrastructure.database.engine import get_session_factory
from rent_settlement.services.agreement_service import AgreementService


def get_ledger_client(request: Request) -> LedgerClient:
    """Provide the ledger client created in the application lifespan."""
    return request.app.state.ledger_client


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_agreement_service(
    ledger_client: LedgerClient = Depends(get_ledger_client),
    settings: Settings = Depends(get_app_settings),
) -> AgreementService:
    """Provide an AgreementService; it opens its own short transactions."""
    return AgreementService(get_session_factory(), ledger_client, settings=settings)
