import asyncio
import logging
import time
from typing import Callable, Optional

from match_keeper.events import EventBus, MATCH_DISCOVERED
from match_keeper.ledger import LedgerClient
from match_keeper.models import Match, MatchCreated, RoundState
from match_keeper.registry import MatchRegistry

logger = logging.getLogger(__name__)


class DiscoveryListener:
    """
    Feeds newly announced matches into the registry.

    One-way producer: it reads the ledger and inserts, and never waits on
    settlement. Re-delivered announcements are harmless because the registry
    ignores addresses it already knows.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        registry: MatchRegistry,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        read_timeout: float = 10.0,
        resubscribe_delay: float = 5.0,
    ):
        self.ledger = ledger
        self.registry = registry
        self.event_bus = event_bus
        self.clock = clock
        self.read_timeout = read_timeout
        self.resubscribe_delay = resubscribe_delay
        self.discovered_count = 0

    async def handle_match_created(self, created: MatchCreated) -> bool:
        """Insert one announced match. Returns True if it was newly tracked."""
        address = created.match_address
        if address in self.registry or self.registry.is_retired(address):
            logger.debug(f"Ignoring repeated announcement for {address}")
            return False

        round_state: Optional[RoundState] = None
        try:
            round_state = await asyncio.wait_for(
                self.ledger.get_match_round_state(address), timeout=self.read_timeout
            )
        except Exception as e:
            # Track it anyway with deadline=now; the next scheduler cycle re-reads it
            logger.warning(f"Initial round read failed for {address}, tracking with immediate deadline: {e}")

        match = Match.from_discovery(created, now=self.clock(), round_state=round_state)
        if not self.registry.insert(match):
            return False

        self.discovered_count += 1
        if self.event_bus:
            await self.event_bus.emit(
                MATCH_DISCOVERED,
                address,
                participants=list(match.participants),
                round_deadline=match.round_deadline,
                deadline_known=round_state is not None,
            )
        return True

    async def bootstrap(self) -> int:
        """Rebuild the registry from the ledger's open matches. Returns how many were inserted."""
        try:
            open_matches = await self.ledger.list_open_matches()
        except Exception as e:
            logger.error(f"Bootstrap enumeration failed, relying on live discovery: {e}", exc_info=True)
            return 0

        inserted = 0
        for created in open_matches:
            if await self.handle_match_created(created):
                inserted += 1
        logger.info(f"Bootstrap tracked {inserted}/{len(open_matches)} open matches")
        return inserted

    async def run(self):
        """Consume the match-created stream until cancelled, re-subscribing after failures."""
        logger.info("Discovery listener started")
        try:
            while True:
                try:
                    async for created in self.ledger.subscribe_match_created():
                        logger.info(f"New match at {created.match_address}: {created.participant1} vs {created.participant2}")
                        await self.handle_match_created(created)
                    logger.warning("Match stream ended, re-subscribing")
                except Exception as e:
                    logger.error(f"Match stream failed: {e}; re-subscribing in {self.resubscribe_delay}s")
                await asyncio.sleep(self.resubscribe_delay)
        except asyncio.CancelledError:
            logger.info("Discovery listener stopped")
            raise
