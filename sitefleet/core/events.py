"""
In-process event bus for site status changes.

The monitor publishes one event per transition (never per tick). Subscribers
are async callables; each one is awaited in isolation so a failing dashboard
hook cannot affect the monitor or the other subscribers.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List

from .constants import SiteStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SiteStatusChanged:
    site_id: str
    old_status: SiteStatus
    new_status: SiteStatus
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "site_id": self.site_id,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "timestamp": self.timestamp.isoformat(),
        }


Subscriber = Callable[[SiteStatusChanged], Awaitable[None]]


class EventBus:
    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Registers ``callback``; returns a function that removes it again."""
        self._subscribers.append(callback)

        def _unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    async def publish(self, event: SiteStatusChanged) -> None:
        if not self._subscribers:
            return
        results = await asyncio.gather(
            *(cb(event) for cb in list(self._subscribers)), return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"[EventBus] Subscriber failed for {event.site_id}: {result}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
