"""Reconciliation leases — time-bounded exclusive claims on payment records.

A lease is a row in reconciliation_leases keyed by record_id. Acquisition:

    1. UPDATE the row if it has expired or is already ours (takeover / renew).
    2. If nothing was updated, INSERT a fresh row.
    3. A primary-key conflict on INSERT means another worker got there
       first: contention, reported as None.

Each call runs in its own short transaction so a lease is visible to other
workers as soon as it is granted. Leases are never held past their TTL;
a crashed worker's claim simply expires.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from rent_settlement.config import get_settings
from rent_settlement.infrastructure.database.repositories import LeaseRepository
from rent_settlement.logging_config import get_logger
from rent_settlement.services.payment_ledger import Clock, utcnow

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


@dataclass(frozen=True)
class Lease:
    record_id: uuid.UUID
    holder_id: str
    expires_at: datetime


class LeaseManager:
    """Grants, renews and releases reconciliation leases."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or utcnow
        self._ttl_seconds = ttl_seconds or get_settings().lease_ttl_seconds

    async def acquire(
        self,
        record_id: uuid.UUID,
        holder_id: str,
        ttl_seconds: int | None = None,
    ) -> Lease | None:
        """Claim the record for `holder_id`, or return None if someone else holds it."""
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds or self._ttl_seconds)

        async with self._session_factory() as session:
            repo = LeaseRepository(session)
            try:
                if await repo.take_over(record_id, holder_id, now, expires_at) == 0:
                    await repo.insert(record_id, holder_id, now, expires_at)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug("lease.contended", record_id=str(record_id), holder_id=holder_id)
                return None

        logger.debug(
            "lease.acquired",
            record_id=str(record_id),
            holder_id=holder_id,
            expires_at=expires_at.isoformat(),
        )
        return Lease(record_id=record_id, holder_id=holder_id, expires_at=expires_at)

    async def release(self, lease: Lease) -> bool:
        """Drop our lease. Returns False if it had already expired and been taken over."""
        async with self._session_factory() as session:
            released = await LeaseRepository(session).delete(lease.record_id, lease.holder_id)
            await session.commit()

        if not released:
            logger.warning(
                "lease.lost_before_release",
                record_id=str(lease.record_id),
                holder_id=lease.holder_id,
            )
        return bool(released)

    async def current_holder(self, record_id: uuid.UUID) -> str | None:
        """Holder of the live lease on a record, if any."""
        async with self._session_factory() as session:
            lease = await LeaseRepository(session).get(record_id)
        if lease is None or lease.expires_at <= self._clock():
            return None
        return lease.holder_id
