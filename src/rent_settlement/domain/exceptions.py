"""Domain exceptions for the Rent Settlement engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware,
and classified as retryable or fatal by the reconciliation engine.
"""

from __future__ import annotations


class SettlementError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "SETTLEMENT_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Authorization & Input Errors ---


class UnauthorizedError(SettlementError):
    """Raised when an actor is not permitted to perform an operation."""

    def __init__(self, actor: str, operation: str) -> None:
        super().__init__(
            message=f"Actor '{actor}' is not authorized to {operation}",
            code="UNAUTHORIZED",
        )
        self.actor = actor
        self.operation = operation


class InvalidAmountError(SettlementError):
    """Raised when an amount is not a positive integer."""

    def __init__(self, amount: object, reason: str = "amount must be positive") -> None:
        super().__init__(
            message=f"Invalid amount {amount!r}: {reason}",
            code="INVALID_AMOUNT",
        )
        self.amount = amount


# --- State Machine Errors ---


class InvalidStateTransitionError(SettlementError):
    """Raised when an attempted state transition is not allowed.

    For payment records this also covers stale writes: the record moved
    under us between read and compare-and-set.
    """

    def __init__(self, current_state: str, attempted_state: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_state = attempted_state


class AlreadyInitializedError(SettlementError):
    """Raised when initialize() is called on a contract a second time."""

    def __init__(self, contract_ref: str) -> None:
        super().__init__(
            message=f"Escrow contract already initialized: {contract_ref}",
            code="ALREADY_INITIALIZED",
        )
        self.contract_ref = contract_ref


# --- Lookup Errors ---


class AgreementNotFoundError(SettlementError):
    """Raised when an agreement ID does not exist."""

    def __init__(self, agreement_id: str) -> None:
        super().__init__(
            message=f"Agreement not found: {agreement_id}",
            code="AGREEMENT_NOT_FOUND",
        )
        self.agreement_id = agreement_id


class PaymentRecordNotFoundError(SettlementError):
    """Raised when a payment record ID does not exist."""

    def __init__(self, record_id: str) -> None:
        super().__init__(
            message=f"Payment record not found: {record_id}",
            code="PAYMENT_RECORD_NOT_FOUND",
        )
        self.record_id = record_id


# --- Submission Errors ---


class DuplicateSubmissionError(SettlementError):
    """Raised when an identical payment is still in flight inside the debounce window."""

    def __init__(self, existing_record_id: str) -> None:
        super().__init__(
            message=f"Duplicate payment submission; record {existing_record_id} is still active",
            code="DUPLICATE_SUBMISSION",
        )
        self.existing_record_id = existing_record_id


# --- Ledger Errors ---


class LedgerError(SettlementError):
    """Base exception for failures talking to the external ledger."""

    def __init__(self, message: str, code: str = "LEDGER_ERROR") -> None:
        super().__init__(message=message, code=code)


class RetryableNetworkError(LedgerError):
    """Ledger unreachable or timed out.

    When unknown_outcome is True the request may have reached the ledger,
    so the transaction must be resolved by querying its identity.
    """

    def __init__(self, message: str, unknown_outcome: bool = False) -> None:
        super().__init__(message=message, code="RETRYABLE_NETWORK_ERROR")
        self.unknown_outcome = unknown_outcome


class FatalLedgerRejectionError(LedgerError):
    """The ledger explicitly rejected the transaction. Never retried."""

    def __init__(self, message: str, reason: str = "rejected") -> None:
        super().__init__(message=message, code="FATAL_LEDGER_REJECTION")
        self.reason = reason


# --- Reconciliation Errors ---


class BalanceDivergenceError(SettlementError):
    """Local confirmed balance disagrees with the on-ledger balance."""

    def __init__(self, agreement_id: str, local_balance: int, ledger_balance: int) -> None:
        super().__init__(
            message=(
                f"Balance divergence on agreement {agreement_id}: "
                f"local={local_balance} ledger={ledger_balance}"
            ),
            code="BALANCE_DIVERGENCE",
        )
        self.agreement_id = agreement_id
        self.local_balance = local_balance
        self.ledger_balance = ledger_balance
