import logging
import threading
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from match_keeper.exceptions import RegistryNotFound
from match_keeper.models import LifecycleState, Match

logger = logging.getLogger(__name__)

Mutator = Callable[[Match], Optional[Match]]


class MatchRegistry:
    """
    In-memory set of tracked matches.

    Every accessor is synchronous and never awaits, and all of them take the
    same lock, so a caller always sees a match either before or after a
    mutation, never halfway. Matches handed out are copies: nothing outside
    the registry holds a reference into its internals.

    Evicted addresses are retired so later announcements of them are ignored. Only the
    most recent `max_retired` are remembered; older ones are long past any
    log re-delivery, and bootstrap skips matches that are over on the ledger.
    """

    def __init__(self, max_retired: int = 100_000):
        self._matches: Dict[str, Match] = {}  # { address: Match }
        self._retired: "OrderedDict[str, None]" = OrderedDict()
        self.max_retired = max_retired
        self._lock = threading.Lock()

    def insert(self, match: Match) -> bool:
        """Track a new match. Returns False (and changes nothing) for known or retired addresses."""
        with self._lock:
            if match.address in self._matches:
                logger.debug(f"Match {match.address} already tracked, ignoring")
                return False
            if match.address in self._retired:
                logger.debug(f"Match {match.address} was retired, ignoring")
                return False
            self._matches[match.address] = match.model_copy(deep=True)
        logger.info(f"Tracking match {match.address} ({match.participants[0]} vs {match.participants[1]})")
        return True

    def snapshot_all(self) -> List[Match]:
        """Point-in-time copies of every tracked match."""
        with self._lock:
            return [match.model_copy(deep=True) for match in self._matches.values()]

    def get(self, address: str) -> Match:
        with self._lock:
            match = self._matches.get(address)
            if match is None:
                raise RegistryNotFound(address)
            return match.model_copy(deep=True)

    def update(self, address: str, mutator: Mutator) -> Match:
        """
        Atomically apply a state transition to one match.

        `mutator` receives a working copy; it may change it in place (and
        return None) or return a replacement. If it raises, the stored match
        is left as it was and the exception propagates.

        Raises:
            RegistryNotFound: the address is not tracked (e.g. evicted concurrently).
        """
        with self._lock:
            current = self._matches.get(address)
            if current is None:
                raise RegistryNotFound(address)
            working = current.model_copy(deep=True)
            result = mutator(working)
            updated = result if result is not None else working
            if updated.address != address:
                raise ValueError(f"Mutator changed match address {address} -> {updated.address}")
            self._matches[address] = updated
            return updated.model_copy(deep=True)

    def evict(self, address: str) -> bool:
        """Stop tracking a match and retire its address. Idempotent."""
        with self._lock:
            self._retired[address] = None
            self._retired.move_to_end(address)
            while len(self._retired) > self.max_retired:
                self._retired.popitem(last=False)
            removed = self._matches.pop(address, None)
        if removed is not None:
            logger.info(f"Evicted match {address}")
        return removed is not None

    def is_retired(self, address: str) -> bool:
        with self._lock:
            return address in self._retired

    def count_by_state(self) -> Dict[str, int]:
        with self._lock:
            counts = {state.value: 0 for state in LifecycleState}
            for match in self._matches.values():
                counts[match.lifecycle_state.value] += 1
            return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._matches)

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address in self._matches
