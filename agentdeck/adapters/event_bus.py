"""Async event bus carrying provider events to the session manager.

Providers run their agent loops in background tasks and emit events
here; the manager drains the bus in one consumer loop, so events of a
single agent are handled in the order they were produced.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from agentdeck.adapters.events import ProviderEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging provider callbacks to the manager."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[ProviderEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: ProviderEvent) -> None:
        """Queue an event, applying backpressure when the bus is full."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s agent=%s (queue size: %d)",
                event.event_type,
                event.agent_id[:12],
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[ProviderEvent]:
        """Yield events as they arrive. Stops on close().

        Call task_done() after handling each yielded event so that
        wait_drained() can return.
        """
        while not self._closed:
            try:
                event = await asyncio.wait_for(
                    self._queue.get(), timeout=0.5
                )
                yield event
            except asyncio.TimeoutError:
                continue

    def task_done(self) -> None:
        self._queue.task_done()

    async def wait_drained(self) -> None:
        """Block until every queued event has been handled."""
        await self._queue.join()

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True
