"""EventNotifier implementations.

The engine only promises at-least-once delivery: an outbox row is stamped
as notified after notify() returns, so a crash in between redelivers it.
Consumers deduplicate on (record_id, status).

    - LoggingEventNotifier:     structured log line per outcome (default)
    - RedisStreamEventNotifier: XADD onto a Redis stream for downstream consumers
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rent_settlement.config import get_settings
from rent_settlement.infrastructure.redis_client import append_to_stream
from rent_settlement.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    import redis.asyncio as aioredis

    from rent_settlement.domain.ledger_protocol import EventNotifier

logger = get_logger(__name__)


class LoggingEventNotifier:
    """Emits each terminal outcome as a structlog event."""

    async def notify(
        self,
        agreement_id: uuid.UUID,
        record_id: uuid.UUID | None,
        status: str,
        amount: int,
    ) -> None:
        logger.info(
            "notification.sent",
            agreement_id=str(agreement_id),
            record_id=str(record_id) if record_id else None,
            status=status,
            amount=amount,
        )


class RedisStreamEventNotifier:
    """Appends each terminal outcome to a Redis stream."""

    def __init__(self, client: aioredis.Redis | None = None, stream: str | None = None) -> None:
        self._client = client
        self._stream = stream

    async def notify(
        self,
        agreement_id: uuid.UUID,
        record_id: uuid.UUID | None,
        status: str,
        amount: int,
    ) -> None:
        entry_id = await append_to_stream(
            {
                "agreement_id": str(agreement_id),
                "record_id": str(record_id) if record_id else "",
                "status": status,
                "amount": str(amount),
            },
            client=self._client,
            stream=self._stream,
        )
        logger.debug("notification.streamed", entry_id=entry_id, status=status)


def build_notifier(backend: str | None = None) -> EventNotifier:
    """Pick the notifier configured by NOTIFIER_BACKEND."""
    backend = backend or get_settings().notifier_backend
    if backend == "redis":
        return RedisStreamEventNotifier()
    return LoggingEventNotifier()
