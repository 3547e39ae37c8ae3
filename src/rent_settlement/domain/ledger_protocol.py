"""Ledger and Notifier Protocols.

Defines the boundary to the two external collaborators:

    - LedgerClient:  the authoritative, append-only transaction network.
    - EventNotifier: whoever delivers terminal payment outcomes to people.

Both are Protocols (structural subtyping), so concrete clients don't need to
inherit from a base class — they just need to match the shape.

The domain layer has ZERO imports from httpx, Redis, or any external service.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from rent_settlement.domain.enums import FinalityState, TransactionKind

# Namespace for deterministic, client-assigned ledger transaction ids.
TRANSACTION_NAMESPACE = uuid.UUID("6f1c2a4e-8d3b-5e7f-9a10-2b3c4d5e6f70")


def make_transaction_id(chain_id: uuid.UUID, attempt: int) -> str:
    """Derive the ledger transaction identity for one attempt of a payment chain.

    The same (chain, attempt) pair always yields the same id, which is what
    lets the ledger deduplicate a resubmission after an unknown outcome.
    """
    return str(uuid.uuid5(TRANSACTION_NAMESPACE, f"{chain_id}:{attempt}"))


def make_lifecycle_transaction_id(
    agreement_id: uuid.UUID, kind: TransactionKind, attempt: int = 0
) -> str:
    """Transaction id for a contract operation (initialize, settle, dispute).

    ``attempt`` counts earlier submissions of this operation the ledger
    finalized as FAILED. A retry after an unknown outcome keeps the same
    attempt and therefore the same id.
    """
    return str(uuid.uuid5(TRANSACTION_NAMESPACE, f"{agreement_id}:{kind.value}:{attempt}"))


@dataclass(frozen=True)
class LedgerTransaction:
    """A transaction addressed to one escrow contract.

    Attributes:
        transaction_id: Client-assigned identity; the ledger dedupes on it.
        kind: Which contract operation to invoke.
        contract_ref: Opaque handle of the target escrow contract.
        actor: Party signing the transaction (payer, landlord, tenant).
        amount: Amount in the smallest currency unit (deposit only).
        params: Extra arguments (initialize: landlord, tenants, rent_amount).
    """

    transaction_id: str
    kind: TransactionKind
    contract_ref: str
    actor: str
    amount: int | None = None
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Serialize for the wire."""
        return {
            "transaction_id": self.transaction_id,
            "kind": self.kind.value,
            "contract_ref": self.contract_ref,
            "actor": self.actor,
            "amount": self.amount,
            "params": self.params,
        }


@dataclass(frozen=True)
class SubmissionReceipt:
    """The ledger accepted a transaction into its queue (not yet final)."""

    submission_ref: str
    accepted_at: datetime | None = None


@dataclass(frozen=True)
class Finality:
    """Answer to "is this transaction final?".

    Attributes:
        state: PENDING, CONFIRMED, FAILED or UNKNOWN (ledger never saw it).
        ledger_time: When the ledger finalized the transaction.
        amount: Amount actually moved (a withdrawal moves the whole balance).
        reason: Failure reason reported by the ledger.
        retryable: Whether a failure may succeed if attempted again.
    """

    state: FinalityState
    ledger_time: datetime | None = None
    amount: int | None = None
    reason: str | None = None
    retryable: bool = False

    @property
    def is_final(self) -> bool:
        return self.state in (FinalityState.CONFIRMED, FinalityState.FAILED)

    @classmethod
    def pending(cls) -> Finality:
        return cls(state=FinalityState.PENDING)

    @classmethod
    def unknown(cls) -> Finality:
        return cls(state=FinalityState.UNKNOWN)

    @classmethod
    def confirmed(cls, ledger_time: datetime, amount: int | None = None) -> Finality:
        return cls(state=FinalityState.CONFIRMED, ledger_time=ledger_time, amount=amount)

    @classmethod
    def failed(cls, reason: str, retryable: bool = False) -> Finality:
        return cls(state=FinalityState.FAILED, reason=reason, retryable=retryable)


@dataclass(frozen=True)
class ContractSnapshot:
    """Pure read of an escrow contract's on-ledger state."""

    contract_ref: str
    status: str
    balance: int


@dataclass(frozen=True)
class ContractEvent:
    """Structured event emitted by every state-mutating contract call."""

    kind: str
    agreement_ref: str
    amount: int
    actor: str


@runtime_checkable
class LedgerClient(Protocol):
    """Protocol that all ledger adapters must satisfy.

    Concrete implementations:
        - ledger/http_client.py  (HTTP API of the external network)
        - ledger/simulated.py    (in-process ledger for tests and simulation)
    """

    async def submit(self, transaction: LedgerTransaction) -> SubmissionReceipt:
        """Submit a transaction.

        Raises:
            RetryableNetworkError: Network failure or timeout.
            FatalLedgerRejectionError: The ledger refused the transaction.
        """
        ...

    async def query_finality(self, submission_ref: str) -> Finality:
        """Report whether a submitted transaction has reached finality."""
        ...

    async def read_contract(self, contract_ref: str) -> ContractSnapshot:
        """Read the committed status and balance of an escrow contract."""
        ...


@runtime_checkable
class EventNotifier(Protocol):
    """Receives terminal payment outcomes. Delivery is at-least-once."""

    async def notify(
        self,
        agreement_id: uuid.UUID,
        record_id: uuid.UUID | None,
        status: str,
        amount: int,
    ) -> None:
        """Deliver one outcome. record_id is None for agreement-level outcomes."""
        ...
