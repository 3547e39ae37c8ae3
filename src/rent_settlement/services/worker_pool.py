"""Concurrent reconciliation workers.

Each worker is an asyncio task driving its own ReconciliationEngine with
its own lease holder id. Workers pull the same outstanding queue; the
per-record lease decides who advances what.

Loop per worker:
    run_once()  ->  check_balances() every N cycles (worker 0 only)  ->  sleep

Shutdown sets an event: no worker takes a new lease afterwards, in-flight
ledger calls finish or hit their timeout, and any lease still held simply
expires on its TTL.

Usage:
    pool = ReconciliationWorkerPool(get_session_factory(), ledger, notifier)
    await pool.start()
    ...
    await pool.stop()
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from rent_settlement.config import get_settings
from rent_settlement.logging_config import bind_worker, get_logger
from rent_settlement.services.reconciliation_engine import ReconciliationEngine

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from rent_settlement.config import Settings
    from rent_settlement.domain.ledger_protocol import EventNotifier, LedgerClient
    from rent_settlement.services.payment_ledger import Clock

logger = get_logger(__name__)


class ReconciliationWorkerPool:
    """Runs `worker_count` reconciliation engines side by side."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger_client: LedgerClient,
        notifier: EventNotifier,
        settings: Settings | None = None,
        clock: Clock | None = None,
        worker_count: int | None = None,
        holder_prefix: str = "worker",
    ) -> None:
        self._settings = settings or get_settings()
        count = worker_count or self._settings.worker_count
        self.engines = [
            ReconciliationEngine(
                session_factory,
                ledger_client,
                notifier,
                holder_id=f"{holder_prefix}-{index}",
                clock=clock,
                settings=self._settings,
            )
            for index in range(count)
        ]
        self._shutdown = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._shutdown.clear()
        self._tasks = [
            asyncio.create_task(self._run_worker(engine, index), name=engine.holder_id)
            for index, engine in enumerate(self.engines)
        ]
        logger.info("worker_pool.started", workers=len(self._tasks))

    async def stop(self, grace_seconds: float | None = None) -> None:
        """Signal shutdown and wait for workers to wind down.

        Workers still busy after the grace period are cancelled.
        """
        self._shutdown.set()
        for engine in self.engines:
            engine.stop()
        if not self._tasks:
            return

        grace = grace_seconds
        if grace is None:
            grace = self._settings.ledger_timeout_seconds * 2
        _, still_running = await asyncio.wait(self._tasks, timeout=grace)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        logger.info("worker_pool.stopped", cancelled=len(still_running))
        self._tasks = []

    async def _run_worker(self, engine: ReconciliationEngine, index: int) -> None:
        bind_worker(engine.holder_id)
        cycles = 0
        while not self._shutdown.is_set():
            try:
                await engine.run_once()
                cycles += 1
                if index == 0 and cycles % self._settings.balance_check_every_cycles == 0:
                    await engine.check_balances()
            except Exception:
                # One bad cycle must not kill the worker; the record is retried next loop.
                logger.exception("worker_pool.cycle_failed", worker_id=engine.holder_id)

            try:
                await asyncio.wait_for(
                    self._shutdown.wait(),
                    timeout=self._settings.poll_interval_seconds,
                )
            except TimeoutError:
                pass
