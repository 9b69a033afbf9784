import logging
from collections import Counter, deque
from typing import Any, Deque, Dict, Optional

from match_keeper import EventBus, MatchEvent
from match_keeper.events import SETTLEMENT_FAILED, SETTLEMENT_FATAL, SETTLEMENT_SUCCEEDED

logger = logging.getLogger(__name__)

SETTLEMENT_EVENTS = (SETTLEMENT_SUCCEEDED, SETTLEMENT_FAILED, SETTLEMENT_FATAL)

class MetricsHandler:
    """
    Aggregates keeper events into operator-facing counters.

    Reactive only: it subscribes to every event, counts state transitions,
    and summarises settlement outcomes (result, attempt count, latency).
    """

    def __init__(self, recent_limit: int = 100):
        self.event_counts: Counter = Counter()
        self.settlement_results: Counter = Counter()
        self.total_attempts = 0
        self.settlements = 0
        self.total_latency_ms = 0.0
        self.max_latency_ms = 0.0
        self.recent_events: Deque[Dict[str, Any]] = deque(maxlen=recent_limit)
        self.last_fatal: Optional[Dict[str, Any]] = None

    def register(self, event_bus: EventBus):
        event_bus.subscribe("*", self.handle_event)
        logger.info("MetricsHandler subscribed to keeper events")

    async def handle_event(self, event: MatchEvent):
        self.event_counts[event.type] += 1
        self.recent_events.append({
            "type": event.type,
            "match_address": event.match_address,
            "timestamp": event.timestamp.isoformat(),
            "data": event.data,
        })
        if event.type in SETTLEMENT_EVENTS:
            self._record_settlement(event)

    def _record_settlement(self, event: MatchEvent):
        result = event.data.get("result", "unknown")
        attempts = int(event.data.get("attempts", 0))
        latency_ms = float(event.data.get("latency_ms", 0.0))

        self.settlement_results[result] += 1
        self.settlements += 1
        self.total_attempts += attempts
        self.total_latency_ms += latency_ms
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)

        if event.type == SETTLEMENT_FATAL:
            self.last_fatal = {
                "match_address": event.match_address,
                "error": event.data.get("error"),
                "timestamp": event.timestamp.isoformat(),
            }
        logger.debug(f"Settlement {result} for {event.match_address}: {attempts} attempts, {latency_ms:.0f}ms")

    def get_snapshot(self) -> Dict[str, Any]:
        return {
            "events": dict(self.event_counts),
            "settlements": {
                "total": self.settlements,
                "by_result": dict(self.settlement_results),
                "total_attempts": self.total_attempts,
                "average_latency_ms": self.total_latency_ms / self.settlements if self.settlements else 0.0,
                "max_latency_ms": self.max_latency_ms,
                "last_fatal": self.last_fatal,
            },
        }

    def get_recent_events(self, limit: int = 20):
        return list(self.recent_events)[-limit:]
