"""Tests for the bounded finality wait used by lifecycle operations."""

from __future__ import annotations

import uuid

import pytest

from rent_settlement.domain.enums import FinalityState, TransactionKind
from rent_settlement.domain.ledger_protocol import LedgerTransaction, make_lifecycle_transaction_id
from rent_settlement.ledger.finality import await_finality
from rent_settlement.ledger.simulated import SimulatedLedger


def _initialize(agreement_id: uuid.UUID) -> LedgerTransaction:
    return LedgerTransaction(
        transaction_id=make_lifecycle_transaction_id(agreement_id, TransactionKind.INITIALIZE),
        kind=TransactionKind.INITIALIZE,
        contract_ref=f"escrow:{agreement_id}",
        actor="landlord-1",
        params={"tenants": ["tenant-1"], "rent_amount": 1000},
    )


class TestAwaitFinality:
    @pytest.mark.asyncio
    async def test_returns_once_final(self) -> None:
        ledger = SimulatedLedger(finality_polls=3)
        receipt = await ledger.submit(_initialize(uuid.uuid4()))

        finality = await await_finality(ledger, receipt.submission_ref, interval=0.001, timeout=1.0)

        assert finality.state == FinalityState.CONFIRMED

    @pytest.mark.asyncio
    async def test_times_out_while_pending(self) -> None:
        ledger = SimulatedLedger(finality_polls=10_000)
        receipt = await ledger.submit(_initialize(uuid.uuid4()))

        with pytest.raises(TimeoutError):
            await await_finality(ledger, receipt.submission_ref, interval=0.005, timeout=0.05)

    @pytest.mark.asyncio
    async def test_unknown_reference_keeps_waiting(self) -> None:
        ledger = SimulatedLedger()

        with pytest.raises(TimeoutError):
            await await_finality(ledger, "never-submitted", interval=0.005, timeout=0.05)
