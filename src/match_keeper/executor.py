import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from match_keeper.config import SettlementPolicy
from match_keeper.events import (
    EventBus,
    MATCH_CONCLUDED,
    SETTLEMENT_FAILED,
    SETTLEMENT_FATAL,
    SETTLEMENT_SUCCEEDED,
)
from match_keeper.exceptions import (
    AlreadySettledError,
    FatalLedgerError,
    InvalidStateTransition,
    RegistryNotFound,
    TransientLedgerError,
)
from match_keeper.ledger import LedgerClient
from match_keeper.models import (
    LifecycleState,
    Match,
    RoundState,
    SettlementOutcome,
    SettlementReceipt,
    SettlementResult,
)
from match_keeper.registry import MatchRegistry

logger = logging.getLogger(__name__)


class SettlementExecutor:
    """
    Issues settlement calls and reports their outcome to the registry.

    Responsibilities:
    - Run one task per dispatched settlement, never two for the same match
    - Retry transient failures with capped exponential backoff, reusing the attempt id
    - Treat "already settled" as success
    - Write the post-settlement ledger state back, or return the match to ACTIVE

    Does NOT decide when to settle (handled by DeadlineScheduler).
    """

    def __init__(
        self,
        ledger: LedgerClient,
        registry: MatchRegistry,
        policy: Optional[SettlementPolicy] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.registry = registry
        self.policy = policy or SettlementPolicy()
        self.event_bus = event_bus
        self.clock = clock
        self._sleep = sleep
        self._tasks: Dict[str, asyncio.Task] = {}  # { address: asyncio.Task }

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def is_in_flight(self, address: str) -> bool:
        return address in self._tasks

    def dispatch(self, address: str, attempt_id: str) -> asyncio.Task:
        """Start a settlement task for a match that was just marked SETTLEMENT_PENDING."""
        existing = self._tasks.get(address)
        if existing is not None:
            logger.error(f"Settlement for {address} already in flight, not dispatching {attempt_id}")
            self._apply(
                address,
                attempt_id,
                lambda m: m.settlement_failed(self.clock(), 0.0, count_failure=False),
            )
            return existing

        task = asyncio.create_task(self.attempt_settlement(address, attempt_id), name=f"settle-{address}")
        self._tasks[address] = task
        task.add_done_callback(lambda t: self._on_task_done(address, attempt_id, t))
        logger.debug(f"Dispatched settlement {attempt_id} for {address}")
        return task

    def _on_task_done(self, address: str, attempt_id: str, task: asyncio.Task):
        if self._tasks.get(address) is task:
            del self._tasks[address]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Settlement task for {address} crashed: {task.exception()}")
            self._release(address, attempt_id, f"Settlement task crashed: {task.exception()}")

    async def attempt_settlement(self, address: str, attempt_id: str) -> SettlementOutcome:
        """Run one logical settlement attempt, with retries, and record its outcome."""
        started = time.monotonic()
        attempts = 0
        receipt: Optional[SettlementReceipt] = None
        result = SettlementResult.EXHAUSTED
        last_error: Optional[str] = None

        try:
            for attempt in range(self.policy.max_attempts):
                attempts += 1
                try:
                    receipt = await asyncio.wait_for(
                        self.ledger.submit_settlement(address, attempt_id),
                        timeout=self.policy.call_timeout,
                    )
                    result = SettlementResult.SETTLED
                    break
                except AlreadySettledError as e:
                    logger.info(f"Round of {address} was already settled ({e.message}); treating as success")
                    result = SettlementResult.ALREADY_SETTLED
                    break
                except FatalLedgerError as e:
                    logger.error(f"Fatal error settling {address}, needs operator attention: {e.message}")
                    result = SettlementResult.FATAL
                    last_error = e.message
                    break
                except (TransientLedgerError, asyncio.TimeoutError) as e:
                    last_error = e.message if isinstance(e, TransientLedgerError) else f"Timed out after {self.policy.call_timeout}s"
                    if attempt + 1 < self.policy.max_attempts:
                        delay = self.policy.backoff_delay(attempt)
                        logger.warning(
                            f"Attempt {attempt + 1}/{self.policy.max_attempts} for {address} failed: {last_error}; retrying in {delay:.2f}s"
                        )
                        await self._sleep(delay)
                except Exception as e:
                    # Unknown response: assume nothing happened and let the next cycle retry
                    logger.error(f"Unexpected error settling {address}: {e}", exc_info=True)
                    last_error = f"Unexpected error: {e}"
                    break

            try:
                if result.is_success:
                    round_state = await self._read_after_settlement(address)
                    applied = self._apply(
                        address, attempt_id, lambda m: m.settlement_succeeded(round_state, self.clock())
                    )
                else:
                    if result == SettlementResult.EXHAUSTED:
                        logger.error(f"Settlement of {address} failed after {attempts} attempts: {last_error}")
                    applied = self._apply(
                        address,
                        attempt_id,
                        lambda m: m.settlement_failed(
                            self.clock(), self.policy.backoff_delay(m.consecutive_failures), last_error
                        ),
                    )
            except Exception as e:
                logger.error(f"Recording settlement {attempt_id} for {address} failed: {e}", exc_info=True)
                last_error = f"Outcome not recorded: {e}"
                applied = self._release(address, attempt_id, last_error)
        except asyncio.CancelledError:
            logger.warning(f"Settlement {attempt_id} for {address} cancelled; returning match to active")
            self._apply(
                address,
                attempt_id,
                lambda m: m.settlement_failed(self.clock(), 0.0, "Cancelled during shutdown", count_failure=False),
            )
            raise

        outcome = SettlementOutcome(
            address=address,
            attempt_id=attempt_id,
            result=result,
            attempts=attempts,
            latency_ms=(time.monotonic() - started) * 1000,
            tx_id=receipt.tx_id if receipt else None,
            error=last_error,
            applied=applied is not None,
        )
        try:
            await self._publish_outcome(outcome, applied)
        except Exception as e:
            logger.error(f"Publishing settlement outcome for {address} failed: {e}", exc_info=True)
        return outcome

    async def _read_after_settlement(self, address: str) -> Optional[RoundState]:
        try:
            return await asyncio.wait_for(
                self.ledger.get_match_round_state(address), timeout=self.policy.read_timeout
            )
        except Exception as e:
            logger.warning(f"Post-settlement read failed for {address}, next cycle will reconcile: {e}")
            return None

    def _release(self, address: str, attempt_id: str, error: str) -> Optional[Match]:
        """Return a still-pending match to ACTIVE at the longest backoff, counting a failure."""
        return self._apply(
            address,
            attempt_id,
            lambda m: m.settlement_failed(self.clock(), self.policy.max_delay, error),
        )

    def _apply(self, address: str, attempt_id: str, transition: Callable[[Match], None]) -> Optional[Match]:
        """Apply an outcome transition if this attempt is still the one the registry is waiting on."""
        def mutate(match: Match) -> None:
            if (
                match.lifecycle_state != LifecycleState.SETTLEMENT_PENDING
                or match.last_settlement_attempt_id != attempt_id
            ):
                raise InvalidStateTransition(
                    f"Stale outcome for {address}: attempt {attempt_id}, registry has "
                    f"{match.last_settlement_attempt_id} ({match.lifecycle_state.value})"
                )
            transition(match)

        try:
            return self.registry.update(address, mutate)
        except RegistryNotFound:
            logger.debug(f"Match {address} left the registry before settlement {attempt_id} returned")
        except InvalidStateTransition as e:
            logger.warning(e.message)
        return None

    async def _publish_outcome(self, outcome: SettlementOutcome, match: Optional[Match]):
        if not self.event_bus:
            return

        payload = outcome.model_dump(mode="json")
        if outcome.result.is_success:
            await self.event_bus.emit(SETTLEMENT_SUCCEEDED, outcome.address, **payload)
            if match is not None and match.lifecycle_state == LifecycleState.CONCLUDED:
                await self.event_bus.emit(MATCH_CONCLUDED, outcome.address, via="settlement")
        elif outcome.result == SettlementResult.FATAL:
            await self.event_bus.emit(SETTLEMENT_FATAL, outcome.address, **payload)
        else:
            await self.event_bus.emit(SETTLEMENT_FAILED, outcome.address, **payload)

    async def drain(self, timeout: float) -> int:
        """Wait for in-flight settlements; cancel whatever is still running after `timeout`. Returns the number cancelled."""
        tasks = list(self._tasks.values())
        if not tasks:
            return 0

        logger.info(f"Waiting up to {timeout}s for {len(tasks)} in-flight settlements")
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} settlements still running at shutdown")
        return len(pending)
