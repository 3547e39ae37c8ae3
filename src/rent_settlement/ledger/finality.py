"""Bounded wait for a single transaction to reach finality.

Used by the agreement lifecycle (initialize, settle, dispute), where the
caller needs the outcome before answering. Payment records never wait here;
they go through the reconciliation engine's re-enqueue loop instead.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from rent_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from rent_settlement.domain.ledger_protocol import Finality, LedgerClient

logger = get_logger(__name__)


async def await_finality(
    client: LedgerClient,
    submission_ref: str,
    interval: float = 1.0,
    timeout: float = 60.0,
) -> Finality:
    """Poll until the ledger reports a final outcome.

    Raises:
        TimeoutError: The transaction was not final within `timeout` seconds.
            This is not evidence of failure; the caller may look again later.
    """
    async with asyncio.timeout(timeout):
        while True:
            finality = await client.query_finality(submission_ref)
            if finality.is_final:
                return finality
            logger.debug(
                "ledger.awaiting_finality",
                submission_ref=submission_ref,
                state=finality.state.value,
            )
            await asyncio.sleep(interval)
