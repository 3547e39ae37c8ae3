"""HTTP adapter over the external ledger network's REST API.

Thin translation layer, no business logic:
    POST /v1/transactions               -> submit
    GET  /v1/transactions/{ref}         -> query_finality
    GET  /v1/contracts/{contract_ref}   -> read_contract

Error mapping:
    - Timeout / lost connection mid-request  -> RetryableNetworkError(unknown_outcome=True)
    - Connection refused                     -> RetryableNetworkError(unknown_outcome=False)
    - 429 / 5xx                              -> RetryableNetworkError
    - other 4xx                              -> FatalLedgerRejectionError

Reads are idempotent and retried in-call with tenacity (LEDGER_READ_RETRIES). Submit is never
retried here: a resubmission is the reconciliation engine's decision, made
only after the transaction's identity has been polled.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from rent_settlement.config import get_settings
from rent_settlement.domain.enums import FinalityState
from rent_settlement.domain.exceptions import (
    FatalLedgerRejectionError,
    RetryableNetworkError,
)
from rent_settlement.domain.ledger_protocol import (
    ContractSnapshot,
    Finality,
    LedgerTransaction,
    SubmissionReceipt,
)
from rent_settlement.logging_config import get_logger

logger = get_logger(__name__)

_RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


class HttpLedgerClient:
    """LedgerClient implementation backed by the network's HTTP gateway."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        read_retries: int | None = None,
    ) -> None:
        """Initialize with optional overrides (defaults come from config).

        Args:
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests.
        """
        settings = get_settings()
        headers = {"Accept": "application/json"}
        self._read_retries = read_retries or settings.ledger_read_retries
        key = api_key if api_key is not None else settings.ledger_api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"

        self._client = httpx.AsyncClient(
            base_url=base_url or settings.ledger_base_url,
            headers=headers,
            timeout=timeout if timeout is not None else settings.ledger_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # LedgerClient protocol
    # ------------------------------------------------------------------

    async def submit(self, transaction: LedgerTransaction) -> SubmissionReceipt:
        logger.debug(
            "ledger.http.submit",
            transaction_id=transaction.transaction_id,
            kind=transaction.kind.value,
            contract_ref=transaction.contract_ref,
        )
        response = await self._send("POST", "/v1/transactions", json=transaction.to_dict())

        # 409 means the ledger already holds this transaction id: same receipt.
        if response.status_code not in (200, 201, 202, 409):
            self._raise_for_status(response)

        body = response.json()
        return SubmissionReceipt(
            submission_ref=body.get("submission_ref") or transaction.transaction_id,
            accepted_at=_parse_time(body.get("accepted_at")),
        )

    async def query_finality(self, submission_ref: str) -> Finality:
        response = await self._read(f"/v1/transactions/{submission_ref}")
        if response.status_code == 404:
            return Finality.unknown()
        if response.status_code != 200:
            self._raise_for_status(response)

        body = response.json()
        state = FinalityState(body.get("state", "pending"))
        return Finality(
            state=state,
            ledger_time=_parse_time(body.get("ledger_time")),
            amount=body.get("amount"),
            reason=body.get("reason"),
            retryable=bool(body.get("retryable", False)),
        )

    async def read_contract(self, contract_ref: str) -> ContractSnapshot:
        response = await self._read(f"/v1/contracts/{contract_ref}")
        if response.status_code != 200:
            self._raise_for_status(response)

        body = response.json()
        return ContractSnapshot(
            contract_ref=contract_ref,
            status=body["status"],
            balance=int(body["balance"]),
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _read(self, url: str) -> httpx.Response:
        """GET with in-call retries on network errors and retryable statuses."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RetryableNetworkError),
            stop=stop_after_attempt(self._read_retries),
            wait=wait_exponential(multiplier=0.2, max=2),
            reraise=True,
        ):
            with attempt:
                response = await self._send("GET", url)
                if response.status_code in _RETRYABLE_STATUS:
                    self._raise_for_status(response)
        return response

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.ConnectError as exc:
            # Never left this host.
            raise RetryableNetworkError(f"Ledger unreachable: {exc}") from exc
        except httpx.TimeoutException as exc:
            logger.warning("ledger.http.timeout", method=method, url=url)
            raise RetryableNetworkError(
                f"Ledger request timed out: {method} {url}",
                unknown_outcome=True,
            ) from exc
        except httpx.TransportError as exc:
            raise RetryableNetworkError(
                f"Ledger transport error: {exc}",
                unknown_outcome=True,
            ) from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        try:
            body = response.json()
        except ValueError:
            body = {}
        reason = body.get("reason") or body.get("error") or response.reason_phrase
        message = f"Ledger returned HTTP {response.status_code}: {reason}"

        if response.status_code in _RETRYABLE_STATUS:
            # A gateway error may have forwarded the request before failing.
            raise RetryableNetworkError(
                message,
                unknown_outcome=response.status_code in (502, 504),
            )
        raise FatalLedgerRejectionError(message, reason=str(reason))


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
