"""Tests for HttpLedgerClient using httpx.MockTransport (no network)."""

from __future__ import annotations

import json

import httpx
import pytest

from rent_settlement.domain.enums import FinalityState, TransactionKind
from rent_settlement.domain.exceptions import FatalLedgerRejectionError, RetryableNetworkError
from rent_settlement.domain.ledger_protocol import LedgerTransaction
from rent_settlement.ledger.http_client import HttpLedgerClient

TX = LedgerTransaction(
    transaction_id="tx-1",
    kind=TransactionKind.DEPOSIT,
    contract_ref="escrow:1",
    actor="tenant-1",
    amount=500,
)


def _client(handler) -> HttpLedgerClient:
    return HttpLedgerClient(
        base_url="http://ledger.test",
        api_key="secret",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
        read_retries=3,
    )


class TestSubmit:
    @pytest.mark.asyncio
    async def test_accepted(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"submission_ref": "ref-1", "accepted_at": "2026-01-01T00:00:00Z"})

        receipt = await _client(handler).submit(TX)

        assert receipt.submission_ref == "ref-1"
        assert receipt.accepted_at is not None and receipt.accepted_at.tzinfo is not None
        assert seen[0].headers["Authorization"] == "Bearer secret"
        assert json.loads(seen[0].content)["transaction_id"] == "tx-1"

    @pytest.mark.asyncio
    async def test_conflict_is_the_same_transaction(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(409, json={})

        receipt = await _client(handler).submit(TX)
        assert receipt.submission_ref == "tx-1"

    @pytest.mark.asyncio
    async def test_rejection_is_fatal(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"reason": "UNAUTHORIZED"})

        with pytest.raises(FatalLedgerRejectionError) as exc_info:
            await _client(handler).submit(TX)
        assert exc_info.value.reason == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_submit_is_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503, json={"error": "busy"})

        with pytest.raises(RetryableNetworkError) as exc_info:
            await _client(handler).submit(TX)
        assert calls == 1
        assert exc_info.value.unknown_outcome is False

    @pytest.mark.asyncio
    async def test_gateway_timeout_is_unknown_outcome(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(504)

        with pytest.raises(RetryableNetworkError) as exc_info:
            await _client(handler).submit(TX)
        assert exc_info.value.unknown_outcome is True

    @pytest.mark.asyncio
    async def test_connect_error_never_left_host(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RetryableNetworkError) as exc_info:
            await _client(handler).submit(TX)
        assert exc_info.value.unknown_outcome is False

    @pytest.mark.asyncio
    async def test_read_timeout_is_unknown_outcome(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(RetryableNetworkError) as exc_info:
            await _client(handler).submit(TX)
        assert exc_info.value.unknown_outcome is True


class TestReads:
    @pytest.mark.asyncio
    async def test_query_finality_confirmed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/transactions/ref-1"
            return httpx.Response(
                200,
                json={"state": "confirmed", "ledger_time": "2026-01-01T00:00:05Z", "amount": 500},
            )

        finality = await _client(handler).query_finality("ref-1")
        assert finality.state == FinalityState.CONFIRMED
        assert finality.amount == 500

    @pytest.mark.asyncio
    async def test_query_finality_not_found_is_unknown(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        assert (await _client(handler).query_finality("ref-x")).state == FinalityState.UNKNOWN

    @pytest.mark.asyncio
    async def test_reads_retry_transient_errors(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"status": "active", "balance": 1000})

        snapshot = await _client(handler).read_contract("escrow:1")
        assert calls == 3
        assert snapshot.balance == 1000
        assert snapshot.status == "active"

    @pytest.mark.asyncio
    async def test_reads_give_up_after_retries(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(500)

        with pytest.raises(RetryableNetworkError):
            await _client(handler).read_contract("escrow:1")
        assert calls == 3
