"""Database infrastructure — engine, ORM models, and repositories."""

from rent_settlement.infrastructure.database.engine import (
    close_db,
    get_session_factory,
    init_db,
)
from rent_settlement.infrastructure.database.orm_models import (
    Agreement,
    Base,
    PaymentEvent,
    PaymentRecord,
    ReconciliationLease,
)
from rent_settlement.infrastructure.database.repositories import (
    AgreementRepository,
    LeaseRepository,
    PaymentEventRepository,
    PaymentRecordRepository,
)

__all__ = [
    "Base",
    "Agreement",
    "PaymentRecord",
    "PaymentEvent",
    "ReconciliationLease",
    "AgreementRepository",
    "PaymentRecordRepository",
    "PaymentEventRepository",
    "LeaseRepository",
    "get_session_factory",
    "init_db",
    "close_db",
]
