"""Shared test fixtures for the Rent Settlement test suite.

Provides:
    - A file-backed SQLite database per test (aiosqlite), schema created from the ORM
    - A controllable clock shared by the engine, the services and the simulated ledger
    - A SimulatedLedger and a recording notifier
    - Factory fixtures for an activated rent agreement
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from rent_settlement.config import Settings
from rent_settlement.infrastructure.database.orm_models import Base
from rent_settlement.ledger.simulated import SimulatedLedger
from rent_settlement.services.agreement_service import AgreementService
from rent_settlement.services.reconciliation_engine import ReconciliationEngine

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from rent_settlement.infrastructure.database.orm_models import Agreement

LANDLORD = "landlord-1"
TENANTS = ["tenant-1", "tenant-2"]
RENT = 1000


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class RecordingNotifier:
    """EventNotifier that remembers every delivery and can be told to fail."""

    def __init__(self) -> None:
        self.sent: list[tuple[uuid.UUID, uuid.UUID | None, str, int]] = []
        self._failures = 0

    def fail_next(self, count: int) -> None:
        self._failures += count

    async def notify(
        self,
        agreement_id: uuid.UUID,
        record_id: uuid.UUID | None,
        status: str,
        amount: int,
    ) -> None:
        if self._failures > 0:
            self._failures -= 1
            raise ConnectionError("notification channel down")
        self.sent.append((agreement_id, record_id, status, amount))


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast, deterministic tests."""
    return Settings(
        app_env="development",
        database_url="sqlite+aiosqlite://",
        ledger_timeout_seconds=0.5,
        lifecycle_poll_interval_seconds=0.01,
        lifecycle_finality_timeout_seconds=1.0,
        lease_ttl_seconds=60,
        max_attempts=5,
        backoff_base_seconds=2.0,
        backoff_cap_seconds=300.0,
        poll_interval_seconds=5.0,
        max_staleness_seconds=3600,
        debounce_window_seconds=30,
        worker_count=3,
        batch_size=50,
        balance_check_every_cycles=1,
        notifier_backend="log",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """A fresh SQLite database file per test, shared by every session of the test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    await engine.dispose()


@pytest.fixture
def ledger(clock: FrozenClock) -> SimulatedLedger:
    return SimulatedLedger(clock=clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ---------------------------------------------------------------------------
# Service Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def service(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: SimulatedLedger,
    clock: FrozenClock,
    settings: Settings,
) -> AgreementService:
    return AgreementService(session_factory, ledger, clock=clock, settings=settings)


@pytest.fixture
def engine(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: SimulatedLedger,
    notifier: RecordingNotifier,
    clock: FrozenClock,
    settings: Settings,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        session_factory,
        ledger,
        notifier,
        holder_id="test-worker",
        clock=clock,
        settings=settings,
    )


@pytest_asyncio.fixture
async def active_agreement(service: AgreementService) -> Agreement:
    """An agreement for RENT with two tenants, initialized on the ledger."""
    agreement = await service.create_agreement(LANDLORD, TENANTS, RENT)
    return await service.activate_agreement(agreement.id, LANDLORD)
