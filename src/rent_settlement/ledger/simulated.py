"""In-process simulated ledger hosting EscrowContract instances.

Behaves like the external network as far as the engine can tell:

    - submit() dry-runs the transaction against committed contract state and
      rejects it outright if the contract would refuse (authorization,
      amount, lifecycle). Accepted transactions are queued, not applied.
    - Transactions are deduplicated by transaction_id: resubmitting a known
      id returns the original receipt and never applies twice.
    - A queued transaction becomes final after `finality_polls` pending
      answers. Finalizing applies every earlier queued transaction first, so
      execution follows ledger order, not poll order.
    - read_contract() only sees finalized state.

Fault injection hooks let tests and the simulation script reproduce the
failure modes the reconciliation engine must survive: submits that never
reach the ledger, submits whose response is lost after acceptance, slow
submits (for timeouts), and transactions dropped at finality.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from rent_settlement.contract.escrow_contract import EscrowContract
from rent_settlement.domain.enums import FinalityState, TransactionKind
from rent_settlement.domain.exceptions import (
    FatalLedgerRejectionError,
    RetryableNetworkError,
    SettlementError,
)
from rent_settlement.domain.ledger_protocol import (
    ContractSnapshot,
    Finality,
    LedgerTransaction,
    SubmissionReceipt,
)
from rent_settlement.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class _Entry:
    transaction: LedgerTransaction
    receipt: SubmissionReceipt
    polls_remaining: int
    finality: Finality = field(default_factory=Finality.pending)


class SimulatedLedger:
    """LedgerClient implementation that runs entirely in memory."""

    def __init__(
        self,
        finality_polls: int = 0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the simulated network.

        Args:
            finality_polls: Number of PENDING answers before a transaction is final.
            clock: Source of ledger timestamps. Defaults to the wall clock (UTC).
        """
        self.finality_polls = finality_polls
        self._clock = clock or (lambda: datetime.now(UTC))
        self._contracts: dict[str, EscrowContract] = {}
        self._entries: dict[str, _Entry] = {}
        self._queue: deque[str] = deque()
        self._lock = asyncio.Lock()

        self._unreachable_submits = 0
        self._lost_responses = 0
        self._dropped_finalities: deque[tuple[str, bool]] = deque()
        self._unreachable_reads = 0
        self._unreachable_queries = 0
        self.submit_delay: float = 0.0

        self.submit_calls = 0
        self.applied: list[str] = []

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------

    def fail_next_submits(self, count: int) -> None:
        """The next `count` submits never reach the ledger."""
        self._unreachable_submits += count

    def lose_next_responses(self, count: int) -> None:
        """The next `count` submits are accepted but the caller sees a timeout."""
        self._lost_responses += count

    def drop_next_finalities(self, count: int, reason: str = "dropped", retryable: bool = True) -> None:
        """The next `count` transactions to finalize fail instead of executing."""
        for _ in range(count):
            self._dropped_finalities.append((reason, retryable))

    def fail_next_reads(self, count: int) -> None:
        self._unreachable_reads += count

    def fail_next_queries(self, count: int) -> None:
        """The next `count` finality lookups fail as if the ledger were unreachable."""
        self._unreachable_queries += count

    # ------------------------------------------------------------------
    # LedgerClient protocol
    # ------------------------------------------------------------------

    async def submit(self, transaction: LedgerTransaction) -> SubmissionReceipt:
        self.submit_calls += 1
        await asyncio.sleep(0)

        async with self._lock:
            if self._unreachable_submits > 0:
                self._unreachable_submits -= 1
                raise RetryableNetworkError("simulated: ledger unreachable")

            existing = self._entries.get(transaction.transaction_id)
            if existing is not None:
                receipt = existing.receipt
            else:
                self._dry_run(transaction)
                receipt = SubmissionReceipt(
                    submission_ref=transaction.transaction_id,
                    accepted_at=self._clock(),
                )
                self._entries[transaction.transaction_id] = _Entry(
                    transaction=transaction,
                    receipt=receipt,
                    polls_remaining=self.finality_polls,
                )
                self._queue.append(transaction.transaction_id)
                logger.debug(
                    "ledger.sim.accepted",
                    transaction_id=transaction.transaction_id,
                    kind=transaction.kind.value,
                )

            if self._lost_responses > 0:
                self._lost_responses -= 1
                raise RetryableNetworkError(
                    "simulated: response lost after acceptance",
                    unknown_outcome=True,
                )

        if self.submit_delay:
            # Accepted already; a caller-side timeout here leaves the outcome unknown.
            await asyncio.sleep(self.submit_delay)
        return receipt

    async def query_finality(self, submission_ref: str) -> Finality:
        await asyncio.sleep(0)
        async with self._lock:
            if self._unreachable_queries > 0:
                self._unreachable_queries -= 1
                raise RetryableNetworkError("simulated: ledger unreachable")
            entry = self._entries.get(submission_ref)
            if entry is None:
                return Finality.unknown()
            if entry.finality.is_final:
                return entry.finality
            if entry.polls_remaining > 0:
                entry.polls_remaining -= 1
                return Finality.pending()
            self._finalize_through(submission_ref)
            return entry.finality

    async def read_contract(self, contract_ref: str) -> ContractSnapshot:
        await asyncio.sleep(0)
        async with self._lock:
            if self._unreachable_reads > 0:
                self._unreachable_reads -= 1
                raise RetryableNetworkError("simulated: ledger unreachable")
            contract = self._contracts.get(contract_ref)
            if contract is None:
                return ContractSnapshot(contract_ref=contract_ref, status="uninitialized", balance=0)
            return contract.snapshot()

    # ------------------------------------------------------------------
    # Test / simulation helpers
    # ------------------------------------------------------------------

    async def finalize_all(self) -> None:
        """Finalize every queued transaction in ledger order."""
        async with self._lock:
            if self._queue:
                self._finalize_through(self._queue[-1])

    def contract(self, contract_ref: str) -> EscrowContract | None:
        return self._contracts.get(contract_ref)

    def force_balance(self, contract_ref: str, balance: int) -> None:
        """Tamper with on-ledger state (divergence tests only)."""
        self._contracts[contract_ref]._balance = balance

    def times_applied(self, transaction_id: str) -> int:
        return self.applied.count(transaction_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _dry_run(self, transaction: LedgerTransaction) -> None:
        current = self._contracts.get(transaction.contract_ref)
        probe = current.clone() if current is not None else EscrowContract(transaction.contract_ref)
        try:
            _apply(probe, transaction)
        except SettlementError as exc:
            logger.info(
                "ledger.sim.rejected",
                transaction_id=transaction.transaction_id,
                reason=exc.code,
            )
            raise FatalLedgerRejectionError(exc.message, reason=exc.code) from exc

    def _finalize_through(self, submission_ref: str) -> None:
        while self._queue:
            tx_id = self._queue.popleft()
            entry = self._entries[tx_id]
            entry.finality = self._execute(entry.transaction)
            if tx_id == submission_ref:
                break

    def _execute(self, transaction: LedgerTransaction) -> Finality:
        if self._dropped_finalities:
            reason, retryable = self._dropped_finalities.popleft()
            return Finality.failed(reason=reason, retryable=retryable)

        contract = self._contracts.get(transaction.contract_ref)
        if contract is None:
            contract = EscrowContract(transaction.contract_ref)
        try:
            moved = _apply(contract, transaction)
        except SettlementError as exc:
            return Finality.failed(reason=exc.code, retryable=False)

        self._contracts[transaction.contract_ref] = contract
        self.applied.append(transaction.transaction_id)
        return Finality(
            state=FinalityState.CONFIRMED,
            ledger_time=self._clock(),
            amount=moved,
        )


def _apply(contract: EscrowContract, transaction: LedgerTransaction) -> int:
    """Invoke the contract operation a transaction names; return the amount moved."""
    match transaction.kind:
        case TransactionKind.INITIALIZE:
            contract.initialize(
                landlord=transaction.actor,
                tenants=list(transaction.params.get("tenants", [])),
                rent_amount=int(transaction.params.get("rent_amount", 0)),
            )
            return 0
        case TransactionKind.DEPOSIT:
            contract.deposit(transaction.actor, transaction.amount or 0)
            return transaction.amount or 0
        case TransactionKind.WITHDRAW:
            return contract.withdraw(transaction.actor)
        case TransactionKind.SETTLE:
            contract.settle(transaction.actor)
            return 0
        case TransactionKind.DISPUTE:
            contract.raise_dispute(transaction.actor)
            return 0
