"""Tests for the in-process SimulatedLedger."""

from __future__ import annotations

import pytest

from rent_settlement.domain.enums import FinalityState, TransactionKind
from rent_settlement.domain.exceptions import FatalLedgerRejectionError, RetryableNetworkError
from rent_settlement.domain.ledger_protocol import LedgerTransaction
from rent_settlement.ledger.simulated import SimulatedLedger

REF = "escrow:sim"


def _tx(tx_id: str, kind: TransactionKind, actor: str, amount: int | None = None, **params) -> LedgerTransaction:
    return LedgerTransaction(
        transaction_id=tx_id,
        kind=kind,
        contract_ref=REF,
        actor=actor,
        amount=amount,
        params=params,
    )


async def _initialized(ledger: SimulatedLedger) -> None:
    await ledger.submit(_tx("init", TransactionKind.INITIALIZE, "landlord", tenants=["t1"], rent_amount=1000))
    await ledger.finalize_all()


class TestSubmitAndFinality:
    @pytest.mark.asyncio
    async def test_submit_is_queued_until_finalized(self) -> None:
        ledger = SimulatedLedger(finality_polls=1)
        await _initialized(ledger)
        receipt = await ledger.submit(_tx("d1", TransactionKind.DEPOSIT, "t1", 400))

        assert (await ledger.read_contract(REF)).balance == 0
        assert (await ledger.query_finality(receipt.submission_ref)).state == FinalityState.PENDING

        finality = await ledger.query_finality(receipt.submission_ref)
        assert finality.state == FinalityState.CONFIRMED
        assert finality.amount == 400
        assert (await ledger.read_contract(REF)).balance == 400

    @pytest.mark.asyncio
    async def test_resubmitting_same_id_applies_once(self) -> None:
        ledger = SimulatedLedger()
        await _initialized(ledger)
        first = await ledger.submit(_tx("d1", TransactionKind.DEPOSIT, "t1", 400))
        second = await ledger.submit(_tx("d1", TransactionKind.DEPOSIT, "t1", 400))
        await ledger.finalize_all()

        assert first == second
        assert ledger.times_applied("d1") == 1
        assert (await ledger.read_contract(REF)).balance == 400

    @pytest.mark.asyncio
    async def test_unknown_id(self) -> None:
        ledger = SimulatedLedger()
        assert (await ledger.query_finality("never-sent")).state == FinalityState.UNKNOWN

    @pytest.mark.asyncio
    async def test_dry_run_rejects_unauthorized(self) -> None:
        ledger = SimulatedLedger()
        await _initialized(ledger)
        with pytest.raises(FatalLedgerRejectionError) as exc_info:
            await ledger.submit(_tx("d1", TransactionKind.DEPOSIT, "intruder", 400))
        assert exc_info.value.reason == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_withdraw_reports_amount_moved(self) -> None:
        ledger = SimulatedLedger()
        await _initialized(ledger)
        await ledger.submit(_tx("d1", TransactionKind.DEPOSIT, "t1", 700))
        await ledger.submit(_tx("w1", TransactionKind.WITHDRAW, "landlord"))
        await ledger.finalize_all()

        finality = await ledger.query_finality("w1")
        assert finality.amount == 700
        assert ledger.applied == ["init", "d1", "w1"]


class TestFaultInjection:
    @pytest.mark.asyncio
    async def test_unreachable_submit_never_lands(self) -> None:
        ledger = SimulatedLedger()
        await _initialized(ledger)
        ledger.fail_next_submits(1)
        with pytest.raises(RetryableNetworkError) as exc_info:
            await ledger.submit(_tx("d1", TransactionKind.DEPOSIT, "t1", 400))
        assert exc_info.value.unknown_outcome is False
        assert (await ledger.query_finality("d1")).state == FinalityState.UNKNOWN

    @pytest.mark.asyncio
    async def test_lost_response_still_lands(self) -> None:
        ledger = SimulatedLedger()
        await _initialized(ledger)
        ledger.lose_next_responses(1)
        with pytest.raises(RetryableNetworkError) as exc_info:
            await ledger.submit(_tx("d1", TransactionKind.DEPOSIT, "t1", 400))
        assert exc_info.value.unknown_outcome is True
        assert (await ledger.query_finality("d1")).state == FinalityState.CONFIRMED

    @pytest.mark.asyncio
    async def test_dropped_finality(self) -> None:
        ledger = SimulatedLedger()
        await _initialized(ledger)
        ledger.drop_next_finalities(1, reason="congestion", retryable=True)
        await ledger.submit(_tx("d1", TransactionKind.DEPOSIT, "t1", 400))

        finality = await ledger.query_finality("d1")
        assert finality.state == FinalityState.FAILED
        assert finality.retryable is True
        assert ledger.times_applied("d1") == 0

    @pytest.mark.asyncio
    async def test_failed_read(self) -> None:
        ledger = SimulatedLedger()
        ledger.fail_next_reads(1)
        with pytest.raises(RetryableNetworkError):
            await ledger.read_contract(REF)
        assert (await ledger.read_contract(REF)).status == "uninitialized"

    @pytest.mark.asyncio
    async def test_failed_query_leaves_transaction_pending(self) -> None:
        ledger = SimulatedLedger()
        await _initialized(ledger)
        await ledger.submit(_tx("d1", TransactionKind.DEPOSIT, "t1", 400))
        ledger.fail_next_queries(1)

        with pytest.raises(RetryableNetworkError):
            await ledger.query_finality("d1")
        assert ledger.times_applied("d1") == 0
        assert (await ledger.query_finality("d1")).state == FinalityState.CONFIRMED
