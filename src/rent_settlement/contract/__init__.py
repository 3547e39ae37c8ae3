"""On-ledger escrow contract program."""

from rent_settlement.contract.escrow_contract import EscrowContract

__all__ = ["EscrowContract"]
