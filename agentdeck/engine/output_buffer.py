"""Bounded per-agent output history."""
from __future__ import annotations

from collections import deque

DEFAULT_CAPACITY = 1000


class OutputBuffer:
    """Keeps the most recent output chunks of one agent.

    Oldest chunks are evicted first once ``capacity`` is reached, so a
    late-joining observer can replay at most the last ``capacity``
    chunks in production order.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be greater than 0")
        self._capacity = capacity
        self._chunks: deque[str] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def push(self, chunk: str) -> None:
        self._chunks.append(chunk)

    def extend(self, chunks) -> None:
        self._chunks.extend(chunks)

    def get_all(self) -> list[str]:
        """Return a copy; callers may mutate it freely."""
        return list(self._chunks)

    def get_recent(self, count: int) -> list[str]:
        if count <= 0:
            return []
        return list(self._chunks)[-count:]

    def __len__(self) -> int:
        return len(self._chunks)
