import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from match_keeper import EventBus, Match, MatchRegistry
from match_keeper.config import SettlementPolicy
from match_keeper.discovery import DiscoveryListener
from match_keeper.exceptions import RegistryNotFound
from match_keeper.executor import SettlementExecutor
from match_keeper.ledger import LedgerClient
from match_keeper.models import CycleReport
from match_keeper.scheduler import DeadlineScheduler

logger = logging.getLogger(__name__)

class MatchCoordinator:
    """
    Owns the match registry and the lifecycle of the keeper loops.

    Responsibilities:
    - Wire discovery, scheduler and executor around one registry
    - Start discovery (with restart bootstrap) and the scheduler loop
    - Graceful drain on stop: no new ticks, let settlements finish, then release

    Does NOT handle:
    - Settlement decisions (handled by DeadlineScheduler)
    - Settlement calls and retries (handled by SettlementExecutor)
    - Metrics (handled by MetricsHandler via the event bus)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        event_bus: EventBus,
        poll_interval: float = 5.0,
        eviction_grace: Optional[float] = None,
        policy: Optional[SettlementPolicy] = None,
        drain_timeout: float = 30.0,
        resubscribe_delay: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.event_bus = event_bus
        self.policy = policy or SettlementPolicy()
        self.drain_timeout = drain_timeout

        self.registry = MatchRegistry()
        self.executor = SettlementExecutor(ledger, self.registry, self.policy, event_bus, clock=clock)
        self.scheduler = DeadlineScheduler(
            ledger,
            self.registry,
            self.executor,
            event_bus,
            poll_interval=poll_interval,
            eviction_grace=eviction_grace,
            read_timeout=self.policy.read_timeout,
            clock=clock,
        )
        self.discovery = DiscoveryListener(
            ledger,
            self.registry,
            event_bus,
            clock=clock,
            read_timeout=self.policy.read_timeout,
            resubscribe_delay=resubscribe_delay,
        )
        self.discovery_task: Optional[asyncio.Task] = None
        self.started_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self.scheduler.is_running

    async def start(self, bootstrap: bool = True) -> bool:
        """Start discovery and the scheduler. Returns False if already running."""
        if self.is_running:
            logger.warning("MatchCoordinator already running")
            return False

        logger.info("Starting MatchCoordinator...")
        self.discovery_task = asyncio.create_task(self._run_discovery(bootstrap), name="match-discovery")
        self.scheduler.start()
        self.started_at = datetime.now()
        logger.info("MatchCoordinator started")
        return True

    async def _run_discovery(self, bootstrap: bool):
        if bootstrap:
            await self.discovery.bootstrap()
        await self.discovery.run()

    async def stop(self) -> bool:
        """Graceful drain. The ledger client stays open so the coordinator can be restarted."""
        if not self.is_running and self.discovery_task is None:
            return False

        logger.info("Stopping MatchCoordinator...")
        await self.scheduler.stop()

        if self.discovery_task is not None:
            self.discovery_task.cancel()
            await asyncio.gather(self.discovery_task, return_exceptions=True)
            self.discovery_task = None

        cancelled = await self.executor.drain(self.drain_timeout)
        self.started_at = None
        logger.info(f"MatchCoordinator stopped ({cancelled} settlements cancelled)")
        return True

    async def shutdown(self):
        """Stop and release the ledger connection."""
        logger.info("Shutting down MatchCoordinator...")
        await self.stop()
        await self.ledger.close()
        logger.info("MatchCoordinator shutdown complete")

    async def run_cycle_now(self) -> CycleReport:
        """Run one scheduler cycle immediately (operator trigger)."""
        return await self.scheduler.run_cycle()

    def get_match(self, address: str) -> Optional[Match]:
        try:
            return self.registry.get(address)
        except RegistryNotFound:
            return None

    def get_tracked_matches(self) -> List[Match]:
        return sorted(self.registry.snapshot_all(), key=lambda m: m.discovered_at)

    def get_status(self) -> Dict[str, Any]:
        last_report = self.scheduler.last_report
        return {
            "running": self.is_running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "poll_interval": self.scheduler.poll_interval,
            "eviction_grace": self.scheduler.eviction_grace,
            "cycles": self.scheduler.cycle_count,
            "tracked_matches": len(self.registry),
            "matches_by_state": self.registry.count_by_state(),
            "settlements_in_flight": self.executor.in_flight,
            "discovered": self.discovery.discovered_count,
            "last_cycle": last_report.model_dump() if last_report else None,
        }
