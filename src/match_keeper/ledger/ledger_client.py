import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, List

from match_keeper.models import MatchCreated, RoundState, SettlementReceipt


logger = logging.getLogger(__name__)


class LedgerClient(ABC):
    """
    Abstract boundary to the ledger that owns match and move state.

    The keeper never computes game results itself: it reads round state and
    asks the ledger to settle. Implementations translate their own transport
    failures into the keeper's taxonomy:

    - TransientLedgerError: network, timeout, nonce contention (retryable)
    - AlreadySettledError: the round was settled already (idempotent success)
    - FatalLedgerError: unauthorized or misconfigured (not retryable)
    """

    @abstractmethod
    def subscribe_match_created(self) -> AsyncIterator[MatchCreated]:
        """
        Stream of newly created matches.

        The stream may re-deliver a match it has already announced; consumers
        must treat notifications as idempotent.
        """
        pass

    @abstractmethod
    async def get_match_round_state(self, address: str) -> RoundState:
        """Read the authoritative round state of a match."""
        pass

    @abstractmethod
    async def submit_settlement(self, address: str, attempt_id: str) -> SettlementReceipt:
        """
        Issue the settlement call for the current round of a match.

        Args:
            address: Match address.
            attempt_id: Token of the logical attempt. Retries of the same
                attempt carry the same token, so an implementation can avoid
                broadcasting a second transaction for it.

        Returns:
            A receipt for the settlement transaction.
        """
        pass

    @abstractmethod
    async def list_open_matches(self) -> List[MatchCreated]:
        """Enumerate matches that are not terminal yet (used to rebuild state on restart)."""
        pass

    async def close(self) -> None:
        """Release connections. Default is a no-op."""
        return None
