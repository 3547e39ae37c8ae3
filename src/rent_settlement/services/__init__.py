"""Application services — use case orchestration."""

from rent_settlement.services.agreement_service import AgreementService
from rent_settlement.services.lease_manager import Lease, LeaseManager
from rent_settlement.services.notifier import (
    LoggingEventNotifier,
    RedisStreamEventNotifier,
    build_notifier,
)
from rent_settlement.services.payment_ledger import PaymentLedger
from rent_settlement.services.reconciliation_engine import ReconciliationEngine
from rent_settlement.services.worker_pool import ReconciliationWorkerPool

__all__ = [
    "AgreementService",
    "Lease",
    "LeaseManager",
    "LoggingEventNotifier",
    "PaymentLedger",
    "ReconciliationEngine",
    "ReconciliationWorkerPool",
    "RedisStreamEventNotifier",
    "build_notifier",
]
