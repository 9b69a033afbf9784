import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Callable, Optional

from match_keeper.events import (
    EventBus,
    MATCH_CONCLUDED,
    MATCH_EVICTED,
    ROUND_REFRESHED,
    SETTLEMENT_DISPATCHED,
)
from match_keeper.exceptions import InvalidStateTransition, RegistryNotFound
from match_keeper.executor import SettlementExecutor
from match_keeper.ledger import LedgerClient
from match_keeper.models import CycleReport, LifecycleState, Match, RoundState
from match_keeper.registry import MatchRegistry

logger = logging.getLogger(__name__)


class Decision(Enum):
    """What one cycle decided for one match."""
    READ_FAILED = "read_failed"
    CONCLUDED = "concluded"
    REFRESHED = "refreshed"
    DISPATCHED = "dispatched"
    WAITING = "waiting"
    BACKING_OFF = "backing_off"
    SKIPPED = "skipped"


def _new_attempt_id() -> str:
    return uuid.uuid4().hex


class DeadlineScheduler:
    """
    Periodically evaluates every tracked match and dispatches settlements.

    Per ACTIVE match, in priority order:
    1. ledger says terminal -> CONCLUDED (evicted after the grace period)
    2. ledger round moved past the cached one -> refresh, stay ACTIVE
    3. deadline passed or both participants acted -> SETTLEMENT_PENDING + dispatch
    4. otherwise wait

    The ACTIVE -> SETTLEMENT_PENDING move is a compare-and-set inside the
    registry, so overlapping cycles can never dispatch the same match twice.
    Dispatch does not wait for the settlement to finish.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        registry: MatchRegistry,
        executor: SettlementExecutor,
        event_bus: Optional[EventBus] = None,
        poll_interval: float = 5.0,
        eviction_grace: Optional[float] = None,
        read_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = _new_attempt_id,
    ):
        self.ledger = ledger
        self.registry = registry
        self.executor = executor
        self.event_bus = event_bus
        self.poll_interval = poll_interval
        self.eviction_grace = poll_interval if eviction_grace is None else eviction_grace
        self.read_timeout = read_timeout
        self.clock = clock
        self.id_factory = id_factory

        self.cycle_count = 0
        self.last_report: Optional[CycleReport] = None
        self._stopping: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the periodic loop in the background."""
        if self.is_running:
            return self._task
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self.run(), name="deadline-scheduler")
        logger.info(f"Scheduler started (interval {self.poll_interval}s, eviction grace {self.eviction_grace}s)")
        return self._task

    async def stop(self):
        """Stop ticking. A cycle already running is allowed to finish."""
        if self._stopping is not None:
            self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Scheduler stopped")

    async def run(self):
        if self._stopping is None:
            self._stopping = asyncio.Event()
        while not self._stopping.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"Scheduler cycle failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def run_cycle(self, now: Optional[float] = None) -> CycleReport:
        """Evaluate every tracked match once."""
        now = self.clock() if now is None else now
        report = CycleReport()
        self.cycle_count += 1

        report.evicted = await self._evict_expired(now)

        active = []
        for match in self.registry.snapshot_all():
            if match.lifecycle_state == LifecycleState.ACTIVE:
                active.append(match)
            elif match.lifecycle_state == LifecycleState.SETTLEMENT_PENDING:
                report.skipped_pending += 1

        results = await asyncio.gather(
            *[self._evaluate(match, now) for match in active],
            return_exceptions=True,
        )

        for match, decision in zip(active, results):
            if isinstance(decision, Exception):
                logger.error(f"Evaluation of {match.address} failed: {decision}")
                continue
            report.evaluated += 1
            if decision == Decision.READ_FAILED:
                report.read_failures += 1
            elif decision == Decision.CONCLUDED:
                report.concluded += 1
            elif decision == Decision.REFRESHED:
                report.refreshed += 1
            elif decision == Decision.DISPATCHED:
                report.dispatched += 1

        if report.dispatched or report.concluded or report.evicted or report.read_failures:
            logger.info(
                f"Cycle {self.cycle_count}: {report.evaluated} evaluated, {report.dispatched} dispatched, "
                f"{report.concluded} concluded, {report.evicted} evicted, {report.read_failures} read failures"
            )
        self.last_report = report
        return report

    async def _evict_expired(self, now: float) -> int:
        evicted = 0
        for match in self.registry.snapshot_all():
            if match.lifecycle_state != LifecycleState.CONCLUDED or match.concluded_at is None:
                continue
            if now - match.concluded_at < self.eviction_grace:
                continue
            if self.registry.evict(match.address):
                evicted += 1
                if self.event_bus:
                    await self.event_bus.emit(MATCH_EVICTED, match.address, concluded_at=match.concluded_at)
        return evicted

    async def _evaluate(self, match: Match, now: float) -> Decision:
        address = match.address
        try:
            round_state = await asyncio.wait_for(
                self.ledger.get_match_round_state(address), timeout=self.read_timeout
            )
        except Exception as e:
            logger.warning(f"Could not read round state for {address}: {e or type(e).__name__}")
            return Decision.READ_FAILED

        if round_state.is_terminal:
            if self._transition(address, lambda m: m.conclude(now)) is None:
                return Decision.SKIPPED
            logger.info(f"Match {address} is over on the ledger")
            if self.event_bus:
                await self.event_bus.emit(MATCH_CONCLUDED, address, via="ledger")
            return Decision.CONCLUDED

        if (
            match.round_index is not None
            and round_state.round_index is not None
            and round_state.round_index != match.round_index
        ):
            if self._transition(address, lambda m: m.refresh_round(round_state)) is None:
                return Decision.SKIPPED
            logger.info(f"Match {address} advanced to round {round_state.round_index} elsewhere; refreshed")
            if self.event_bus:
                await self.event_bus.emit(
                    ROUND_REFRESHED,
                    address,
                    round_index=round_state.round_index,
                    round_deadline=round_state.deadline,
                )
            return Decision.REFRESHED

        deadline_passed = now >= round_state.deadline
        if not (deadline_passed or round_state.both_acted):
            self._correct_cache(match, round_state)
            return Decision.WAITING

        if now < match.retry_not_before:
            self._correct_cache(match, round_state)
            logger.debug(f"Match {address} due but backing off until {match.retry_not_before:.0f}")
            return Decision.BACKING_OFF

        if self.executor.is_in_flight(address):
            return Decision.SKIPPED

        attempt_id = self.id_factory()

        def begin(m: Match) -> None:
            m.refresh_round(round_state)
            m.begin_settlement(attempt_id)

        if self._transition(address, begin) is None:
            return Decision.SKIPPED

        trigger = "both_acted" if round_state.both_acted else "deadline"
        logger.info(f"Settling {address} round {round_state.round_index} ({trigger}), attempt {attempt_id}")
        self.executor.dispatch(address, attempt_id)
        if self.event_bus:
            await self.event_bus.emit(
                SETTLEMENT_DISPATCHED,
                address,
                attempt_id=attempt_id,
                trigger=trigger,
                round_index=round_state.round_index,
                round_deadline=round_state.deadline,
            )
        return Decision.DISPATCHED

    def _correct_cache(self, match: Match, round_state: RoundState) -> None:
        """Adopt the ledger's deadline when the cached one is a placeholder or out of date."""
        if match.round_deadline == round_state.deadline and match.round_index == round_state.round_index:
            return
        self._transition(match.address, lambda m: m.refresh_round(round_state))

    def _transition(self, address: str, mutator: Callable[[Match], None]) -> Optional[Match]:
        try:
            return self.registry.update(address, mutator)
        except RegistryNotFound:
            logger.debug(f"Match {address} evicted during evaluation")
        except InvalidStateTransition as e:
            logger.debug(f"Skipping {address}: {e.message}")
        return None
