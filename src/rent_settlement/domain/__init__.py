"""Domain layer — pure business logic with zero framework dependencies."""

from rent_settlement.domain.enums import (
    AgreementStatus,
    DisplayStatus,
    EventType,
    FinalityState,
    PaymentDirection,
    PaymentStatus,
    ReconcileOutcome,
    TransactionKind,
)
from rent_settlement.domain.exceptions import (
    AgreementNotFoundError,
    AlreadyInitializedError,
    BalanceDivergenceError,
    DuplicateSubmissionError,
    FatalLedgerRejectionError,
    InvalidAmountError,
    InvalidStateTransitionError,
    PaymentRecordNotFoundError,
    RetryableNetworkError,
    SettlementError,
    UnauthorizedError,
)
from rent_settlement.domain.ledger_protocol import (
    ContractEvent,
    ContractSnapshot,
    EventNotifier,
    Finality,
    LedgerClient,
    LedgerTransaction,
    SubmissionReceipt,
    make_lifecycle_transaction_id,
    make_transaction_id,
)
from rent_settlement.domain.state_machine import (
    EscrowContractStateMachine,
    PaymentRecordStateMachine,
    validate_payment_transition,
)

__all__ = [
    "AgreementStatus",
    "DisplayStatus",
    "EventType",
    "FinalityState",
    "PaymentDirection",
    "PaymentStatus",
    "ReconcileOutcome",
    "TransactionKind",
    "AgreementNotFoundError",
    "AlreadyInitializedError",
    "BalanceDivergenceError",
    "DuplicateSubmissionError",
    "FatalLedgerRejectionError",
    "InvalidAmountError",
    "InvalidStateTransitionError",
    "PaymentRecordNotFoundError",
    "RetryableNetworkError",
    "SettlementError",
    "UnauthorizedError",
    "ContractEvent",
    "ContractSnapshot",
    "EventNotifier",
    "Finality",
    "LedgerClient",
    "LedgerTransaction",
    "SubmissionReceipt",
    "make_lifecycle_transaction_id",
    "make_transaction_id",
    "EscrowContractStateMachine",
    "PaymentRecordStateMachine",
    "validate_payment_transition",
]
