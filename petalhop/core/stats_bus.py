# petalhop/core/stats_bus.py
"""
Stats Bus - fan-out of live peer stats to streaming subscribers

Publishing never waits on a subscriber: each one owns a bounded queue and
an update that does not fit is dropped for that subscriber only.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    """One attached stream consumer"""
    subscription_id: int
    queue: asyncio.Queue
    dropped: int = 0

    async def get(self) -> Dict[int, Any]:
        return await self.queue.get()


class StatsBus:
    """
    Publish-subscribe registry for per-tick stats snapshots
    """

    def __init__(self, max_queue_size: int = 16):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(
            subscription_id=next(self._ids),
            queue=asyncio.Queue(maxsize=self.max_queue_size),
        )
        self._subscribers[sub.subscription_id] = sub
        logger.debug(f"Stats subscriber {sub.subscription_id} attached (total: {self.subscriber_count})")
        return sub

    def unsubscribe(self, sub: Optional[Subscription]) -> None:
        if sub and self._subscribers.pop(sub.subscription_id, None):
            logger.debug(f"Stats subscriber {sub.subscription_id} detached (total: {self.subscriber_count})")

    def publish(self, snapshot: Dict[int, Any]) -> int:
        """
        Offer a snapshot to every subscriber without blocking.

        Returns the number of subscribers that accepted it.
        """
        delivered = 0

        # Snapshot of subscribers; they may detach while we iterate
        for sub in list(self._subscribers.values()):
            try:
                sub.queue.put_nowait(snapshot)
                delivered += 1
            except asyncio.QueueFull:
                sub.dropped += 1
                if sub.dropped == 1 or sub.dropped % 100 == 0:
                    logger.warning(
                        f"Stats subscriber {sub.subscription_id} is stalled, "
                        f"dropped {sub.dropped} updates"
                    )

        return delivered
