from typing import Optional, Tuple
from enum import Enum
from pydantic import BaseModel, Field

from match_keeper.exceptions import InvalidStateTransition

# --- Enums ---

class LifecycleState(Enum):
    """Where a tracked match is in the settlement lifecycle."""
    ACTIVE = "active"
    SETTLEMENT_PENDING = "settlement_pending"
    CONCLUDED = "concluded"

class SettlementResult(Enum):
    """Final result of one logical settlement attempt."""
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    EXHAUSTED = "exhausted"
    FATAL = "fatal"
    CANCELLED = "cancelled"

    @property
    def is_success(self) -> bool:
        return self in (SettlementResult.SETTLED, SettlementResult.ALREADY_SETTLED)

# --- Ledger boundary models ---

class MatchCreated(BaseModel):
    """A match announced by the ledger."""
    participant1: str = Field(..., description="Address of the first participant.")
    participant2: str = Field(..., description="Address of the second participant.")
    match_address: str = Field(..., min_length=1, description="Ledger reference of the match.")
    block_number: Optional[int] = Field(None, description="Block the announcement was included in, if known.")

class RoundState(BaseModel):
    """Authoritative round state read from the ledger."""
    is_terminal: bool = Field(..., description="True once the match is over on the ledger.")
    deadline: float = Field(..., description="Epoch seconds when the current decision window closes.")
    participant1_acted: bool = Field(False, description="Participant 1 has recorded a move this round.")
    participant2_acted: bool = Field(False, description="Participant 2 has recorded a move this round.")
    round_index: Optional[int] = Field(None, description="Ledger round counter, if the ledger exposes one.")

    @property
    def both_acted(self) -> bool:
        return self.participant1_acted and self.participant2_acted

class SettlementReceipt(BaseModel):
    """Result of a submitted settlement call."""
    tx_id: str = Field(..., description="Ledger transaction identifier.")
    confirmed: bool = Field(..., description="Whether the ledger confirmed the transaction.")

# --- Tracked state ---

class Match(BaseModel):
    """A tracked match and its locally cached ledger snapshot.

    Lifecycle moves go through the transition methods below; each checks the
    current state and raises InvalidStateTransition when the move is illegal:

        ACTIVE --begin_settlement--> SETTLEMENT_PENDING
        SETTLEMENT_PENDING --settlement_succeeded--> ACTIVE | CONCLUDED
        SETTLEMENT_PENDING --settlement_failed--> ACTIVE
        ACTIVE --conclude--> CONCLUDED
    """
    address: str = Field(..., frozen=True, description="Ledger reference of the match.")
    participants: Tuple[str, str] = Field(..., frozen=True, description="Ordered participant pair.")
    discovered_at: float = Field(..., frozen=True, description="Epoch seconds when the match was discovered.")
    round_deadline: float = Field(..., description="Epoch seconds when the current round closes.")
    round_index: Optional[int] = Field(None, description="Last observed ledger round counter.")
    lifecycle_state: LifecycleState = Field(LifecycleState.ACTIVE)
    last_settlement_attempt_id: Optional[str] = Field(None, description="Token of the most recent dispatch.")
    consecutive_failures: int = Field(0, ge=0)
    retry_not_before: float = Field(0.0, description="No re-dispatch before this epoch time.")
    concluded_at: Optional[float] = Field(None)
    last_error: Optional[str] = Field(None, description="Last error surfaced for this match.")

    @classmethod
    def from_discovery(cls, created: MatchCreated, now: float, round_state: Optional[RoundState] = None) -> "Match":
        """Build a freshly discovered match. Without a round read the deadline is `now`."""
        return cls(
            address=created.match_address,
            participants=(created.participant1, created.participant2),
            discovered_at=now,
            round_deadline=round_state.deadline if round_state else now,
            round_index=round_state.round_index if round_state else None,
        )

    def _require(self, *states: LifecycleState) -> None:
        if self.lifecycle_state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidStateTransition(
                f"Match {self.address} is {self.lifecycle_state.value}, expected one of: {allowed}"
            )

    def refresh_round(self, round_state: RoundState) -> None:
        """Adopt the ledger's deadline and round counter."""
        self.round_deadline = round_state.deadline
        if round_state.round_index is not None:
            self.round_index = round_state.round_index

    def begin_settlement(self, attempt_id: str) -> None:
        self._require(LifecycleState.ACTIVE)
        self.lifecycle_state = LifecycleState.SETTLEMENT_PENDING
        self.last_settlement_attempt_id = attempt_id

    def settlement_succeeded(self, round_state: Optional[RoundState], now: float) -> None:
        """Apply a successful settlement. `round_state` is the post-settlement read, if one succeeded."""
        self._require(LifecycleState.SETTLEMENT_PENDING)
        self.consecutive_failures = 0
        self.retry_not_before = 0.0
        self.last_error = None
        if round_state is not None:
            self.refresh_round(round_state)
            if round_state.is_terminal:
                self.lifecycle_state = LifecycleState.CONCLUDED
                self.concluded_at = now
                return
        self.lifecycle_state = LifecycleState.ACTIVE

    def settlement_failed(self, now: float, backoff: float, error: Optional[str] = None, count_failure: bool = True) -> None:
        """Return to ACTIVE after a failed attempt so the next cycle can re-dispatch."""
        self._require(LifecycleState.SETTLEMENT_PENDING)
        self.lifecycle_state = LifecycleState.ACTIVE
        if count_failure:
            self.consecutive_failures += 1
            self.retry_not_before = now + backoff
        if error:
            self.last_error = error

    def conclude(self, now: float) -> None:
        self._require(LifecycleState.ACTIVE)
        self.lifecycle_state = LifecycleState.CONCLUDED
        self.concluded_at = now

# --- Reports ---

class SettlementOutcome(BaseModel):
    """Summary of one logical settlement attempt, across all of its retries."""
    address: str
    attempt_id: str
    result: SettlementResult
    attempts: int = Field(0, description="Number of submit calls made.")
    latency_ms: float = Field(0.0, description="Wall time from first submit to final result.")
    tx_id: Optional[str] = None
    error: Optional[str] = None
    applied: bool = Field(True, description="False when the outcome was stale and not written to the registry.")

class CycleReport(BaseModel):
    """What one scheduler cycle did."""
    evaluated: int = 0
    dispatched: int = 0
    concluded: int = 0
    refreshed: int = 0
    evicted: int = 0
    read_failures: int = 0
    skipped_pending: int = 0
