"""
Exceptions raised across the match keeper.
"""

class MatchKeeperException(Exception):
    """Base exception for the application."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)

# --- Ledger ---

class LedgerError(MatchKeeperException):
    """Base class for failures reported by the ledger boundary."""
    pass

class TransientLedgerError(LedgerError):
    """Network, timeout or nonce contention. Safe to retry."""
    pass

class AlreadySettledError(LedgerError):
    """The ledger rejected the call because the round is already settled.

    Not a failure: a retry of an already-applied settlement lands here.
    """
    pass

# The name used by the error taxonomy for the idempotent-success signal.
AlreadySatisfied = AlreadySettledError

class FatalLedgerError(LedgerError):
    """Authorization or configuration problem. Retrying will not help."""
    pass

# --- Registry ---

class RegistryNotFound(MatchKeeperException):
    """Raised when a match address is not tracked (usually evicted concurrently)."""
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Match {address} not found in registry")

class InvalidStateTransition(MatchKeeperException):
    """Raised when a lifecycle transition is not legal from the current state."""
    pass
