"""Tests for ReconciliationWorkerPool: concurrent workers and shutdown."""

from __future__ import annotations

import asyncio

import pytest

from rent_settlement.domain.enums import DisplayStatus, PaymentDirection
from rent_settlement.services.worker_pool import ReconciliationWorkerPool


async def _wait_for(predicate, attempts: int = 500) -> bool:
    for _ in range(attempts):
        if await predicate():
            return True
        await asyncio.sleep(0.01)
    return False


class TestReconciliationWorkerPool:
    @pytest.mark.asyncio
    async def test_workers_confirm_payment_once(
        self, session_factory, ledger, notifier, clock, settings, service, active_agreement
    ) -> None:
        fast = settings.model_copy(update={"poll_interval_seconds": 0.01})
        pool = ReconciliationWorkerPool(
            session_factory, ledger, notifier, settings=fast, clock=clock, worker_count=3
        )
        await service.initiate_payment(active_agreement.id, "tenant-1", 1000, PaymentDirection.DEPOSIT)

        async def confirmed() -> bool:
            (view,) = await service.get_payment_history(active_agreement.id)
            return view.status == DisplayStatus.CONFIRMED

        await pool.start()
        try:
            assert pool.running
            assert await _wait_for(confirmed)
        finally:
            await pool.stop()

        assert not pool.running
        # initialize + one deposit, however many workers raced for it
        assert len(ledger.applied) == 2
        assert (await service.get_agreement_status(active_agreement.id)).confirmed_balance == 1000
        assert {sent[2] for sent in notifier.sent} == {"confirmed"}

    @pytest.mark.asyncio
    async def test_stop_before_start_is_harmless(self, session_factory, ledger, notifier, settings) -> None:
        pool = ReconciliationWorkerPool(session_factory, ledger, notifier, settings=settings, worker_count=2)

        await pool.stop()

        assert not pool.running
        assert all(engine.stopping for engine in pool.engines)
        assert [engine.holder_id for engine in pool.engines] == ["worker-0", "worker-1"]
