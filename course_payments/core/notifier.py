"""In-process change notifications for order status updates."""
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OrderChange:
    """Status change published after a transition commits."""

    order_id: str
    status: str
    rejection_reason: Optional[str] = None


class OrderChangeNotifier:
    """
    Publish/subscribe hub keyed by order id.

    Only sees transitions committed by this process; watchers pair it with
    polling for changes made elsewhere.
    """

    def __init__(self, queue_size: int = 16) -> None:
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue[OrderChange]]] = defaultdict(set)

    @asynccontextmanager
    async def subscribe(self, order_id: str) -> AsyncIterator["asyncio.Queue[OrderChange]"]:
        """Yield a queue receiving every change for ``order_id`` until exit."""
        queue: asyncio.Queue[OrderChange] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[order_id].add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(order_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[order_id]

    def publish(self, change: OrderChange) -> int:
        """Deliver ``change`` to current subscribers; returns how many received it."""
        delivered = 0
        for queue in list(self._subscribers.get(change.order_id, ())):
            try:
                queue.put_nowait(change)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("order_change_dropped_queue_full", order_id=change.order_id)
        return delivered

    def subscriber_count(self, order_id: str) -> int:
        return len(self._subscribers.get(order_id, ()))
