"""
In-process change notifications for match settlement.

Published after every committed vote, settlement and dispute so listeners
(the Discord cog, tests) can re-evaluate a match. Events are hints, not
the source of truth: a subscriber always re-reads the match.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from padel_bot.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

class MatchEventKind(Enum):
    SETTLEMENT_PREPARED = "settlement_prepared"
    VOTE_RECORDED = "vote_recorded"
    RATINGS_APPLIED = "ratings_applied"
    MATCH_CANCELLED = "match_cancelled"
    RATINGS_REVERTED = "ratings_reverted"

@dataclass
class MatchEvent:
    match_id: int
    kind: MatchEventKind
    player_id: Optional[int] = None
    occurred_at: object = field(default_factory=utc_now)

Subscriber = Callable[[MatchEvent], Awaitable[None]]

class MatchEventBus:
    """Fan-out of match events to async subscribers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = asyncio.Lock()

    async def subscribe(self, callback: Subscriber) -> None:
        async with self._lock:
            self._subscribers.append(callback)

    async def unsubscribe(self, callback: Subscriber) -> None:
        async with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    async def publish(self, event: MatchEvent) -> None:
        """
        Deliver an event to every subscriber.

        A failing subscriber is logged and does not affect the others or the
        publisher: the publishing transaction has already committed.
        """
        async with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                await callback(event)
            except Exception as e:
                logger.error(
                    f"Match event subscriber {getattr(callback, '__name__', callback)} failed "
                    f"for {event.kind.value} on Match {event.match_id}: {e}",
                    exc_info=True
                )
