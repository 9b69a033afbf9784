"""
Pytest configuration and shared fixtures for keeper testing.
"""

import pytest
import asyncio
import logging
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional, Tuple, Union

from match_keeper import EventBus, MatchEvent, MatchRegistry
from match_keeper.config import SettlementPolicy
from match_keeper.exceptions import TransientLedgerError
from match_keeper.executor import SettlementExecutor
from match_keeper.ledger import LedgerClient
from match_keeper.models import Match, MatchCreated, RoundState, SettlementReceipt
from match_keeper.scheduler import DeadlineScheduler

# Configure logging for tests
logging.basicConfig(level=logging.INFO)

PLAYER_A = "0x1111111111111111111111111111111111111111"
PLAYER_B = "0x2222222222222222222222222222222222222222"

# Submit script entry that never returns (exercises call timeouts)
HANG = object()


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeLedger(LedgerClient):
    """
    In-memory ledger with scriptable failures.

    - round_states: what get_match_round_state returns per address
    - read_failures: number of upcoming reads that fail, per address
    - unreachable: every read fails while True
    - submit_script: per-address queue of exceptions / HANG consumed by submit calls;
      an empty queue means the call succeeds
    - after_settlement: round state the ledger moves to when a submit succeeds
    """

    def __init__(self):
        self.round_states: Dict[str, RoundState] = {}
        self.read_failures: Dict[str, int] = defaultdict(int)
        self.unreachable = False
        self.submit_script: Dict[str, List[Union[Exception, object]]] = defaultdict(list)
        self.after_settlement: Dict[str, RoundState] = {}
        self.submit_delay = 0.0
        self.open_matches: List[MatchCreated] = []
        self.announcements: asyncio.Queue = asyncio.Queue()

        self.read_calls: Dict[str, int] = defaultdict(int)
        self.submit_calls: List[Tuple[str, str]] = []
        self._in_flight: Dict[str, int] = defaultdict(int)
        self.max_concurrent_submits: Dict[str, int] = defaultdict(int)
        self.closed = False

    def submits_for(self, address: str) -> List[str]:
        return [attempt_id for addr, attempt_id in self.submit_calls if addr == address]

    async def subscribe_match_created(self) -> AsyncIterator[MatchCreated]:
        while True:
            item = await self.announcements.get()
            if isinstance(item, Exception):
                raise item
            yield item

    async def get_match_round_state(self, address: str) -> RoundState:
        self.read_calls[address] += 1
        if self.unreachable:
            raise TransientLedgerError("ledger unreachable")
        if self.read_failures[address] > 0:
            self.read_failures[address] -= 1
            raise TransientLedgerError(f"read of {address} failed")
        if address not in self.round_states:
            raise TransientLedgerError(f"no contract at {address}")
        return self.round_states[address].model_copy()

    async def submit_settlement(self, address: str, attempt_id: str) -> SettlementReceipt:
        self.submit_calls.append((address, attempt_id))
        self._in_flight[address] += 1
        self.max_concurrent_submits[address] = max(self.max_concurrent_submits[address], self._in_flight[address])
        try:
            if self.submit_delay:
                await asyncio.sleep(self.submit_delay)
            script = self.submit_script[address]
            step = script.pop(0) if script else None
            if step is HANG:
                await asyncio.sleep(3600)
            if isinstance(step, Exception):
                raise step
            if address in self.after_settlement:
                self.round_states[address] = self.after_settlement.pop(address)
            return SettlementReceipt(tx_id=f"0x{len(self.submit_calls):064x}", confirmed=True)
        finally:
            self._in_flight[address] -= 1

    async def list_open_matches(self) -> List[MatchCreated]:
        return list(self.open_matches)

    async def close(self) -> None:
        self.closed = True


def round_state(deadline: float, p1: bool = False, p2: bool = False, round_index: Optional[int] = 1, terminal: bool = False) -> RoundState:
    return RoundState(
        is_terminal=terminal,
        deadline=deadline,
        participant1_acted=p1,
        participant2_acted=p2,
        round_index=round_index,
    )


def created(address: str) -> MatchCreated:
    return MatchCreated(participant1=PLAYER_A, participant2=PLAYER_B, match_address=address)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll `predicate` until it is true or fail the test."""
    async def _poll():
        while not predicate():
            await asyncio.sleep(interval)
    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(now=1_000.0)

@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()

@pytest.fixture
def event_bus() -> EventBus:
    """Create a fresh EventBus for each test."""
    return EventBus()

@pytest.fixture
def recorded_events(event_bus: EventBus) -> List[MatchEvent]:
    """Every event published on the shared bus."""
    events: List[MatchEvent] = []

    async def record(event: MatchEvent):
        events.append(event)

    event_bus.subscribe("*", record)
    return events

@pytest.fixture
def registry() -> MatchRegistry:
    return MatchRegistry()

@pytest.fixture
def policy() -> SettlementPolicy:
    """Fast retry policy: backoff sleeps are recorded, not slept."""
    return SettlementPolicy(max_attempts=5, base_delay=1.0, max_delay=8.0, call_timeout=0.2, read_timeout=0.2)

@pytest.fixture
def sleeps() -> List[float]:
    return []

@pytest.fixture
def executor(ledger, registry, policy, event_bus, clock, sleeps) -> SettlementExecutor:
    async def fake_sleep(delay: float):
        sleeps.append(delay)

    return SettlementExecutor(ledger, registry, policy, event_bus, clock=clock, sleep=fake_sleep)

@pytest.fixture
def scheduler(ledger, registry, executor, event_bus, clock) -> DeadlineScheduler:
    return DeadlineScheduler(
        ledger, registry, executor, event_bus,
        poll_interval=5.0, read_timeout=0.2, clock=clock,
    )

@pytest.fixture
def rs():
    """RoundState builder: rs(deadline, p1=False, p2=False, round_index=1, terminal=False)."""
    return round_state

@pytest.fixture
def announce():
    """MatchCreated builder for a given match address."""
    return created

@pytest.fixture
def until():
    return wait_until

@pytest.fixture
def hang():
    return HANG

@pytest.fixture
def make_match(clock):
    """Factory for tracked matches with a known round."""
    def _make(address: str, deadline: float, round_index: Optional[int] = 1, **overrides) -> Match:
        fields = dict(
            address=address,
            participants=(PLAYER_A, PLAYER_B),
            discovered_at=clock(),
            round_deadline=deadline,
            round_index=round_index,
        )
        fields.update(overrides)
        return Match(**fields)
    return _make
