import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Callable, Awaitable, Any
from collections import defaultdict
from pydantic import BaseModel, ConfigDict, Field

# Event types published by the keeper components.
MATCH_DISCOVERED = "match_discovered"
MATCH_CONCLUDED = "match_concluded"
MATCH_EVICTED = "match_evicted"
ROUND_REFRESHED = "round_refreshed"
SETTLEMENT_DISPATCHED = "settlement_dispatched"
SETTLEMENT_SUCCEEDED = "settlement_succeeded"
SETTLEMENT_FAILED = "settlement_failed"
SETTLEMENT_FATAL = "settlement_fatal"

class MatchEvent(BaseModel):
    """Event emitted when a tracked match changes state."""
    model_config = ConfigDict(arbitrary_types_allowed=True, use_enum_values=True)

    type: str = Field(..., min_length=1, description="Event type identifier (e.g., 'match_discovered', 'settlement_failed')")
    match_address: str = Field(..., min_length=1, description="Ledger reference of the match")
    data: Dict[str, Any] = Field(default_factory=dict, description="Event payload")
    timestamp: datetime = Field(default_factory=datetime.now, description="When the event was created")

class EventBus:
    """
    Simple event bus connecting the keeper components to observers
    (metrics, operator surfaces).

    Supports async event handlers with error isolation - if one handler fails,
    others continue to run and the publisher is never affected.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[MatchEvent], Awaitable[None]]]] = defaultdict(list)
        self._wildcard: List[Callable[[MatchEvent], Awaitable[None]]] = []
        self.logger = logging.getLogger(__name__)

    def subscribe(self, event_type: str, handler: Callable[[MatchEvent], Awaitable[None]]):
        """Subscribe a handler to an event type. Use '*' to receive every event."""
        if event_type == "*":
            self._wildcard.append(handler)
        else:
            self._subscribers[event_type].append(handler)
        self.logger.debug(f"Subscribed handler to {event_type}")

    async def publish(self, event: MatchEvent):
        """Publish an event to all subscribers."""
        handlers = self._subscribers[event.type] + self._wildcard
        if not handlers:
            self.logger.debug(f"No subscribers for event type: {event.type}")
            return

        self.logger.debug(f"Publishing {event.type} to {len(handlers)} handlers")

        # Run all handlers concurrently with error isolation
        results = await asyncio.gather(
            *[self._safe_handle(handler, event) for handler in handlers],
            return_exceptions=True
        )

        for i, result in enumerate(results):
            if isinstance(result, Exception):
                self.logger.error(f"Event handler {i} failed for {event.type}: {result}")

    async def emit(self, event_type: str, match_address: str, **data: Any):
        """Shorthand for publishing a MatchEvent."""
        await self.publish(MatchEvent(type=event_type, match_address=match_address, data=data))

    async def _safe_handle(self, handler: Callable, event: MatchEvent):
        """Run a handler with error isolation."""
        try:
            await handler(event)
        except Exception as e:
            self.logger.error(f"Handler {getattr(handler, '__name__', handler)} failed: {e}", exc_info=True)
            raise  # Re-raise so gather() can catch it as exception

    def get_subscriber_count(self, event_type: str) -> int:
        """Get number of subscribers for an event type (useful for testing)."""
        if event_type == "*":
            return len(self._wildcard)
        return len(self._subscribers[event_type])
