"""Tests for the EventNotifier implementations."""

from __future__ import annotations

import uuid

import pytest
from structlog.testing import capture_logs

from rent_settlement.services.notifier import (
    LoggingEventNotifier,
    RedisStreamEventNotifier,
    build_notifier,
)


class FakeRedis:
    """Records XADD calls the way redis.asyncio would receive them."""

    def __init__(self) -> None:
        self.entries: list[tuple[str, dict, dict]] = []

    async def xadd(self, name: str, fields: dict, **kwargs: object) -> str:
        self.entries.append((name, fields, kwargs))
        return f"{len(self.entries)}-0"


class TestLoggingEventNotifier:
    @pytest.mark.asyncio
    async def test_logs_outcome(self) -> None:
        agreement_id, record_id = uuid.uuid4(), uuid.uuid4()

        with capture_logs() as logs:
            await LoggingEventNotifier().notify(agreement_id, record_id, "confirmed", 1000)

        (entry,) = [log for log in logs if log["event"] == "notification.sent"]
        assert entry["record_id"] == str(record_id)
        assert entry["status"] == "confirmed"
        assert entry["amount"] == 1000


class TestRedisStreamEventNotifier:
    @pytest.mark.asyncio
    async def test_appends_to_stream(self) -> None:
        client = FakeRedis()
        agreement_id = uuid.uuid4()

        await RedisStreamEventNotifier(client=client, stream="rent:test").notify(
            agreement_id, None, "disputed", 250
        )

        ((stream, fields, kwargs),) = client.entries
        assert stream == "rent:test"
        assert fields == {
            "agreement_id": str(agreement_id),
            "record_id": "",
            "status": "disputed",
            "amount": "250",
        }
        assert kwargs["approximate"] is True


class TestBuildNotifier:
    def test_backends(self) -> None:
        assert isinstance(build_notifier("log"), LoggingEventNotifier)
        assert isinstance(build_notifier("redis"), RedisStreamEventNotifier)
