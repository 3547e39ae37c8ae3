#!/usr/bin/env python3
"""Rent Settlement — End-to-End Simulation.

Runs rent agreements against the in-process SimulatedLedger with a real
AgreementService and ReconciliationEngine:

    Scenario 1: Happy Path
        - Landlord registers an agreement with two tenants and activates it
        - Each tenant deposits half the rent -> both confirmed
        - Landlord withdraws the rent and settles the escrow

    Scenario 2: Flaky Ledger
        - The first submit times out after the ledger accepted it
        - The next cycle finds the transaction on the ledger and adopts it
        - A second deposit is dropped before finality -> superseded and retried
        - Every transaction is applied exactly once

    Scenario 3: Divergence and Dispute
        - The on-ledger balance is tampered with while the agreement is quiet
        - The balance check reports the divergence once it persists
        - A tenant raises a dispute, freezing the escrow

Usage:
    # Option A: Against the configured database (PostgreSQL):
    docker compose up -d
    uv run python simulation.py

    # Option B: Without Docker (temporary SQLite file):
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
import uuid
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from rent_settlement.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from rent_settlement.config import get_settings  # noqa: E402
from rent_settlement.domain.enums import PaymentDirection  # noqa: E402
from rent_settlement.infrastructure.database import engine as db_engine  # noqa: E402
from rent_settlement.infrastructure.database.orm_models import Base  # noqa: E402
from rent_settlement.ledger.simulated import SimulatedLedger  # noqa: E402
from rent_settlement.services.agreement_service import AgreementService  # noqa: E402
from rent_settlement.services.notifier import LoggingEventNotifier  # noqa: E402
from rent_settlement.services.reconciliation_engine import ReconciliationEngine  # noqa: E402

LANDLORD = "landlord-ada"
TENANTS = ["tenant-bo", "tenant-cy"]
RENT = 120_000  # minor units

# Short delays so retries and divergence windows pass in well under a second.
SIM_SETTINGS = get_settings().model_copy(
    update={
        "backoff_base_seconds": 0.05,
        "backoff_cap_seconds": 0.2,
        "poll_interval_seconds": 0.2,
        "lifecycle_poll_interval_seconds": 0.01,
        "balance_check_every_cycles": 1,
    }
)

# Module-level state
_sqlite_engine = None
_sqlite_session_factory: async_sessionmaker[AsyncSession] | None = None
_tmpdir: tempfile.TemporaryDirectory | None = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Initialize database engine and create tables."""
    global _sqlite_engine, _sqlite_session_factory, _tmpdir

    if use_sqlite:
        # A file, not :memory:, so concurrent sessions see one database.
        _tmpdir = tempfile.TemporaryDirectory(prefix="rent-sim-")
        _sqlite_engine = create_async_engine(
            f"sqlite+aiosqlite:///{_tmpdir.name}/simulation.db",
            connect_args={"timeout": 30},
        )
        _sqlite_session_factory = async_sessionmaker(
            bind=_sqlite_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized", path=_tmpdir.name)
    else:
        await db_engine.init_db()


def session_factory() -> async_sessionmaker[AsyncSession]:
    if _sqlite_session_factory is not None:
        return _sqlite_session_factory
    return db_engine.get_session_factory()


async def shutdown_database() -> None:
    """Close database connections."""
    global _sqlite_engine, _sqlite_session_factory, _tmpdir

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
        _sqlite_session_factory = None
        if _tmpdir is not None:
            _tmpdir.cleanup()
            _tmpdir = None
    else:
        await db_engine.close_db()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
def build_stack(ledger: SimulatedLedger) -> tuple[AgreementService, ReconciliationEngine]:
    factory = session_factory()
    service = AgreementService(factory, ledger, settings=SIM_SETTINGS)
    engine = ReconciliationEngine(
        factory,
        ledger,
        LoggingEventNotifier(),
        holder_id="simulation",
        settings=SIM_SETTINGS,
    )
    return service, engine


async def drive(engine: ReconciliationEngine, service: AgreementService, agreement_id: uuid.UUID) -> None:
    """Run reconciliation cycles until nothing is in flight for the agreement."""
    for _ in range(50):
        await engine.run_once()
        status = await service.get_agreement_status(agreement_id)
        if status.in_flight == 0:
            return
        await asyncio.sleep(SIM_SETTINGS.backoff_base_seconds)
    raise RuntimeError(f"payments for {agreement_id} did not settle")


async def open_agreement(service: AgreementService) -> uuid.UUID:
    agreement = await service.create_agreement(LANDLORD, TENANTS, RENT)
    await service.activate_agreement(agreement.id, LANDLORD)
    logger.info("🏠 LANDLORD: Agreement active", agreement_id=str(agreement.id), rent=RENT)
    return agreement.id


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_status(service: AgreementService, agreement_id: uuid.UUID) -> Any:
    status = await service.get_agreement_status(agreement_id)
    flag = "  ⚠️  needs review" if status.needs_review else ""
    print(f"  Status: {status.status}   confirmed balance: {status.confirmed_balance}{flag}")
    return status


async def print_history(service: AgreementService, agreement_id: uuid.UUID) -> None:
    print("\n  💳 Payments:")
    for view in await service.get_payment_history(agreement_id):
        print(
            f"    {view.direction:<10} {view.amount:>8} by {view.payer_id:<12} "
            f"{view.status} (attempts: {view.attempts})"
        )


async def print_audit_trail(service: AgreementService, agreement_id: uuid.UUID) -> None:
    """Print the full audit trail for an agreement."""
    events = await service.get_events(agreement_id)
    print("\n  📜 Audit Trail:")
    for i, evt in enumerate(events, 1):
        old = evt.old_status or "—"
        print(f"    {i}. [{evt.event_type}] {old} → {evt.new_status} (by {evt.actor})")
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path() -> None:
    """Two tenants split the rent, the landlord withdraws and settles."""
    banner("SCENARIO 1: Happy Path — Split Rent, Withdraw, Settle")

    ledger = SimulatedLedger()
    service, engine = build_stack(ledger)

    section("Step 1: Landlord registers and activates the agreement")
    agreement_id = await open_agreement(service)

    section("Step 2: Each tenant deposits half")
    for tenant in TENANTS:
        await service.initiate_payment(agreement_id, tenant, RENT // 2, PaymentDirection.DEPOSIT)
        logger.info("🧑 TENANT: Deposit initiated", tenant=tenant, amount=RENT // 2)
    await print_status(service, agreement_id)

    section("Step 3: Reconciliation drives deposits to finality")
    await drive(engine, service, agreement_id)
    await print_status(service, agreement_id)

    section("Step 4: Landlord withdraws the rent and settles")
    await service.initiate_payment(agreement_id, LANDLORD, RENT, PaymentDirection.WITHDRAWAL)
    await drive(engine, service, agreement_id)
    await service.settle_agreement(agreement_id, LANDLORD)
    await print_status(service, agreement_id)

    await print_history(service, agreement_id)
    await print_audit_trail(service, agreement_id)


# ===========================================================================
# Scenario 2: Flaky Ledger
# ===========================================================================
async def scenario_2_flaky_ledger() -> None:
    """Lost responses and dropped transactions never double-apply a payment."""
    banner("SCENARIO 2: Flaky Ledger — Lost Responses and Dropped Transactions")

    ledger = SimulatedLedger()
    service, engine = build_stack(ledger)
    agreement_id = await open_agreement(service)

    section("Step 1: First deposit is accepted but the response is lost")
    ledger.lose_next_responses(1)
    await service.initiate_payment(agreement_id, TENANTS[0], RENT // 2, PaymentDirection.DEPOSIT)
    await engine.run_once()
    (view,) = await service.get_payment_history(agreement_id)
    print(f"  After the timeout the payment reads: {view.status}")

    section("Step 2: Next cycle looks the transaction up and adopts it")
    await drive(engine, service, agreement_id)
    await print_status(service, agreement_id)

    section("Step 3: Second deposit is dropped before finality and retried")
    ledger.drop_next_finalities(1, reason="block reorganized")
    await service.initiate_payment(agreement_id, TENANTS[1], RENT // 2, PaymentDirection.DEPOSIT)
    await drive(engine, service, agreement_id)
    await print_status(service, agreement_id)

    section("Ledger view")
    applied_once = all(ledger.times_applied(tx) == 1 for tx in ledger.applied)
    print(f"  Submit calls: {ledger.submit_calls}   applied transactions: {len(ledger.applied)}")
    print(f"  {'✅' if applied_once else '❌'} Every transaction applied exactly once")

    await print_history(service, agreement_id)
    await print_audit_trail(service, agreement_id)


# ===========================================================================
# Scenario 3: Divergence and Dispute
# ===========================================================================
async def scenario_3_divergence_and_dispute() -> None:
    """A tampered ledger balance is reported; a tenant freezes the escrow."""
    banner("SCENARIO 3: Divergence and Dispute")

    ledger = SimulatedLedger()
    service, engine = build_stack(ledger)
    agreement_id = await open_agreement(service)

    await service.initiate_payment(agreement_id, TENANTS[0], RENT, PaymentDirection.DEPOSIT)
    await drive(engine, service, agreement_id)

    section("Step 1: The on-ledger balance changes behind our back")
    status = await print_status(service, agreement_id)
    ledger.force_balance(status.contract_ref, RENT - 500)

    section("Step 2: Balance check waits one poll interval, then reports")
    first = await engine.check_balances()
    print(f"  First check: {len(first)} divergence(s) reported")
    await asyncio.sleep(SIM_SETTINGS.poll_interval_seconds * 1.5)
    for divergence in await engine.check_balances():
        print(
            f"  ⚠️  Divergence: local {divergence.local_balance} vs ledger {divergence.ledger_balance}"
        )
    await print_status(service, agreement_id)

    section("Step 3: Tenant raises a dispute")
    await service.raise_dispute(agreement_id, TENANTS[1], reason="balance does not match receipts")
    await print_status(service, agreement_id)

    await print_audit_trail(service, agreement_id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_flaky_ledger,
    3: scenario_3_divergence_and_dispute,
}


async def run_all(use_sqlite: bool = False) -> None:
    """Run all scenarios sequentially."""
    await init_database(use_sqlite=use_sqlite)
    try:
        print("\n" + "🏠" * 35)
        print("  RENT SETTLEMENT — SIMULATION")
        db_type = "SQLite (temporary file)" if use_sqlite else "Configured database"
        print(f"  Database: {db_type}")
        print("  Ledger: simulated, in-process")
        print("🏠" * 35 + "\n")

        for scenario in SCENARIOS.values():
            await scenario()

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")
    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = False) -> None:
    """Run a specific scenario."""
    await init_database(use_sqlite=use_sqlite)
    try:
        if num not in SCENARIOS:
            print(f"Unknown scenario {num}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        await SCENARIOS[num]()
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Rent Settlement Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use a temporary SQLite file instead of the configured database.",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=args.sqlite))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite))
