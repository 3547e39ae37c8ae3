"""Tests for reconciliation leases: exclusivity, expiry takeover and release."""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING

import pytest

from rent_settlement.domain.enums import PaymentDirection
from rent_settlement.services.lease_manager import LeaseManager
from rent_settlement.services.payment_ledger import PaymentLedger

if TYPE_CHECKING:
    import uuid

    from rent_settlement.infrastructure.database.orm_models import Agreement


async def _make_records(session_factory, clock, settings, agreement: Agreement, count: int) -> list[uuid.UUID]:
    ids = []
    async with session_factory() as session, session.begin():
        ledger = PaymentLedger(session, clock=clock, settings=settings)
        for n in range(count):
            record = await ledger.create(agreement.id, "tenant-1", PaymentDirection.DEPOSIT, 100 + n)
            ids.append(record.id)
    return ids


@pytest.fixture
def leases(session_factory, clock) -> LeaseManager:
    return LeaseManager(session_factory, clock=clock, ttl_seconds=60)


class TestAcquire:
    @pytest.mark.asyncio
    async def test_second_holder_is_refused(self, leases, session_factory, clock, settings, active_agreement) -> None:
        (record_id,) = await _make_records(session_factory, clock, settings, active_agreement, 1)

        lease = await leases.acquire(record_id, "worker-a")
        assert lease is not None
        assert await leases.acquire(record_id, "worker-b") is None
        assert await leases.current_holder(record_id) == "worker-a"

    @pytest.mark.asyncio
    async def test_holder_can_renew(self, leases, session_factory, clock, settings, active_agreement) -> None:
        (record_id,) = await _make_records(session_factory, clock, settings, active_agreement, 1)

        first = await leases.acquire(record_id, "worker-a")
        clock.advance(30)
        renewed = await leases.acquire(record_id, "worker-a")
        assert renewed is not None
        assert renewed.expires_at > first.expires_at

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, leases, session_factory, clock, settings, active_agreement) -> None:
        (record_id,) = await _make_records(session_factory, clock, settings, active_agreement, 1)

        stale = await leases.acquire(record_id, "worker-a")
        clock.advance(61)
        assert await leases.current_holder(record_id) is None

        assert await leases.acquire(record_id, "worker-b") is not None
        assert await leases.current_holder(record_id) == "worker-b"
        # The crashed holder cannot release what it no longer owns.
        assert await leases.release(stale) is False
        assert await leases.current_holder(record_id) == "worker-b"

    @pytest.mark.asyncio
    async def test_release_frees_the_record(self, leases, session_factory, clock, settings, active_agreement) -> None:
        (record_id,) = await _make_records(session_factory, clock, settings, active_agreement, 1)

        lease = await leases.acquire(record_id, "worker-a")
        assert await leases.release(lease) is True
        assert await leases.acquire(record_id, "worker-b") is not None


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_exactly_one_winner_per_record(self, leases, session_factory, clock, settings, active_agreement) -> None:
        record_ids = await _make_records(session_factory, clock, settings, active_agreement, 4)
        rng = random.Random(7)

        async def contender(holder: str, record_id: uuid.UUID):
            await asyncio.sleep(rng.random() / 100)
            return await leases.acquire(record_id, holder)

        attempts = [
            (f"worker-{w}", record_id)
            for record_id in record_ids
            for w in range(5)
        ]
        rng.shuffle(attempts)
        results = await asyncio.gather(*(contender(h, r) for h, r in attempts))

        for record_id in record_ids:
            winners = [lease for lease in results if lease is not None and lease.record_id == record_id]
            assert len(winners) == 1
            assert await leases.current_holder(record_id) == winners[0].holder_id
