"""
Ledger boundary for the match keeper.

LedgerClient is the abstract seam; Web3LedgerClient talks to the
GameConsole / PlayGround contracts on an EVM chain.
"""

from .ledger_client import LedgerClient
from .web3_client import Web3LedgerClient, classify_ledger_error

__all__ = [
    'LedgerClient',
    'Web3LedgerClient',
    'classify_ledger_error',
]
