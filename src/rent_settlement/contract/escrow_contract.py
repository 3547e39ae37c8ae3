"""Escrow Contract — the on-ledger program for one rent agreement.

This is the code the ledger executes; the off-chain engine never calls it
directly, only through a LedgerClient. The SimulatedLedger hosts instances
of it so the whole settlement flow can run in-process.

Rules:
    - initialize() once; again raises AlreadyInitializedError.
    - deposit() only while active, only by a tenant, only positive amounts.
    - withdraw() only by the landlord while active; moves the whole balance.
    - settle() / raise_dispute() close the contract.

The contract holds no lock. Concurrent calls are serialized by the ledger's
transaction ordering, and deposit arithmetic is plain integer addition so
the order of concurrent deposits never changes the resulting balance.
"""

from __future__ import annotations

from statemachine.exceptions import TransitionNotAllowed

from rent_settlement.domain.enums import AgreementStatus
from rent_settlement.domain.exceptions import (
    AlreadyInitializedError,
    InvalidAmountError,
    InvalidStateTransitionError,
    UnauthorizedError,
)
from rent_settlement.domain.ledger_protocol import ContractEvent, ContractSnapshot
from rent_settlement.domain.state_machine import EscrowContractStateMachine


class EscrowContract:
    """Custodial balance and authorization rules for one agreement."""

    def __init__(self, contract_ref: str) -> None:
        self.contract_ref = contract_ref
        self._sm = EscrowContractStateMachine()
        self._landlord: str | None = None
        self._tenants: tuple[str, ...] = ()
        self._rent_amount = 0
        self._balance = 0
        self.events: list[ContractEvent] = []

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def initialize(self, landlord: str, tenants: list[str], rent_amount: int) -> None:
        if self._sm.status != AgreementStatus.UNINITIALIZED:
            raise AlreadyInitializedError(self.contract_ref)
        if not tenants:
            raise UnauthorizedError(landlord, "initialize a contract without tenants")
        _require_positive(rent_amount)

        self._fire("initialize")
        self._landlord = landlord
        self._tenants = tuple(dict.fromkeys(tenants))
        self._rent_amount = rent_amount
        self._emit("initialized", rent_amount, landlord)

    def deposit(self, payer: str, amount: int) -> int:
        """Add amount to the custodial balance and return the new balance."""
        self._require_active("deposit")
        if payer not in self._tenants:
            raise UnauthorizedError(payer, "deposit")
        _require_positive(amount)

        self._balance += amount
        self._emit("deposit", amount, payer)
        return self._balance

    def withdraw(self, caller: str) -> int:
        """Release the full balance to the landlord and return the amount moved."""
        self._require_active("withdraw")
        if caller != self._landlord:
            raise UnauthorizedError(caller, "withdraw")

        amount = self._balance
        self._balance = 0
        self._emit("withdraw", amount, caller)
        return amount

    def settle(self, caller: str) -> None:
        """Close a fully paid-out lease."""
        if caller != self._landlord:
            raise UnauthorizedError(caller, "settle")
        if self._balance != 0:
            raise InvalidAmountError(self._balance, "balance must be withdrawn before settling")
        self._fire("settle")
        self._emit("settled", 0, caller)

    def raise_dispute(self, actor: str) -> None:
        if actor != self._landlord and actor not in self._tenants:
            raise UnauthorizedError(actor, "raise a dispute")
        self._fire("dispute")
        self._emit("disputed", self._balance, actor)

    # ------------------------------------------------------------------
    # Pure reads
    # ------------------------------------------------------------------

    def get_balance(self) -> int:
        return self._balance

    def get_status(self) -> AgreementStatus:
        return AgreementStatus(self._sm.status)

    @property
    def landlord(self) -> str | None:
        return self._landlord

    @property
    def tenants(self) -> tuple[str, ...]:
        return self._tenants

    @property
    def rent_amount(self) -> int:
        return self._rent_amount

    def clone(self) -> EscrowContract:
        """Independent copy for dry runs; events are not carried over."""
        twin = EscrowContract(self.contract_ref)
        twin._sm = EscrowContractStateMachine(current_status=self._sm.status)
        twin._landlord = self._landlord
        twin._tenants = self._tenants
        twin._rent_amount = self._rent_amount
        twin._balance = self._balance
        return twin

    def snapshot(self) -> ContractSnapshot:
        return ContractSnapshot(
            contract_ref=self.contract_ref,
            status=self._sm.status,
            balance=self._balance,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _require_active(self, operation: str) -> None:
        if self._sm.status != AgreementStatus.ACTIVE:
            raise InvalidStateTransitionError(self._sm.status, operation)

    def _fire(self, event_name: str) -> None:
        current = self._sm.status
        try:
            getattr(self._sm, event_name)()
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(current, event_name) from err

    def _emit(self, kind: str, amount: int, actor: str) -> None:
        self.events.append(
            ContractEvent(
                kind=kind,
                agreement_ref=self.contract_ref,
                amount=amount,
                actor=actor,
            )
        )

    def __repr__(self) -> str:
        return (
            f"<EscrowContract ref={self.contract_ref} status={self._sm.status} "
            f"balance={self._balance}>"
        )


def _require_positive(amount: int) -> None:
    # bool is an int subclass; True is not a currency amount.
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)
