"""LedgerClient implementations.

Two clients satisfy the LedgerClient protocol:
    - HttpLedgerClient:  the external network's HTTP gateway (httpx)
    - SimulatedLedger:   in-process network hosting EscrowContract instances
"""

from rent_settlement.ledger.finality import await_finality
from rent_settlement.ledger.http_client import HttpLedgerClient
from rent_settlement.ledger.simulated import SimulatedLedger

__all__ = ["HttpLedgerClient", "SimulatedLedger", "await_finality"]
