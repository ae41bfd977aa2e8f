"""Fan-out of observer events to every connected dashboard client.

Delivery is best-effort: each observer has its own bounded queue and a
slow observer loses events instead of stalling the publisher. Observers
that need the full history replay it from the output endpoints.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from agentdeck.adapters.events import ObserverEvent, event_to_dict

logger = logging.getLogger(__name__)


class BroadcastFanout:
    def __init__(self, queue_size: int = 5000) -> None:
        self._queue_size = queue_size
        self._queues: list[asyncio.Queue[dict[str, Any]]] = []
        self._dropped = 0

    @property
    def observer_count(self) -> int:
        return len(self._queues)

    @property
    def dropped(self) -> int:
        return self._dropped

    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(
            maxsize=self._queue_size
        )
        self._queues.append(queue)
        logger.info("Observer subscribed active_observers=%d", len(self._queues))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        try:
            self._queues.remove(queue)
        except ValueError:
            return
        logger.info("Observer unsubscribed active_observers=%d", len(self._queues))

    def publish(self, event: ObserverEvent) -> None:
        """Deliver to every observer without blocking."""
        msg = event_to_dict(event)
        for queue in list(self._queues):
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                self._dropped += 1
                logger.warning(
                    "Observer queue full, dropping event %s", event.event_type,
                )
