"""
In-process channels used by the lifecycle manager.

- EventLog: append-only log with a bounded replay window. Subscribers can
  start from any absolute offset and receive everything appended later.
- ValueChannel: holds the latest value; watchers receive the current value
  and then every update (intermediate values may be skipped when a watcher
  is slower than the publisher).

Both are closed once the owning execution finalises; iterators then drain
and stop.
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventLog(Generic[T]):
    """Append-only, replayable sequence of events."""

    def __init__(self, replay_size: int | None = None):
        """
        Args:
            replay_size: Number of most recent items kept for replay.
                None keeps everything.
        """
        self._items: deque[T] = deque(maxlen=replay_size)
        self._appended = 0
        self._closed = False
        self._changed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        """Total number of items ever appended."""
        return self._appended

    @property
    def _first_offset(self) -> int:
        return self._appended - len(self._items)

    def append(self, item: T) -> bool:
        """Append an item. Returns False (and drops it) once the log is closed."""
        if self._closed:
            logger.debug("Dropped event appended to a closed log")
            return False
        self._items.append(item)
        self._appended += 1
        self._notify()
        return True

    def items(self, offset: int = 0) -> list[T]:
        """Retained items from an absolute offset on."""
        start = max(offset - self._first_offset, 0)
        return list(self._items)[start:]

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._notify()

    def _notify(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    async def subscribe(self, offset: int = 0) -> AsyncIterator[T]:
        """Yield retained items from ``offset`` on, then live items until closed."""
        position = offset
        while True:
            waiter = self._changed
            while True:
                position = max(position, self._first_offset)
                if position >= self._appended:
                    break
                yield self._items[position - self._first_offset]
                position += 1
            if self._closed:
                return
            await waiter.wait()


class ValueChannel(Generic[T]):
    """Latest-value channel."""

    def __init__(self, initial: T):
        self._value = initial
        self._version = 0
        self._closed = False
        self._changed = asyncio.Event()

    @property
    def value(self) -> T:
        return self._value

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, value: T) -> bool:
        if self._closed:
            return False
        self._value = value
        self._version += 1
        self._notify()
        return True

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._notify()

    def _notify(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    async def watch(self) -> AsyncIterator[T]:
        """Yield the current value, then each newer value until closed."""
        seen = -1
        while True:
            waiter = self._changed
            if self._version != seen:
                seen = self._version
                yield self._value
                continue
            if self._closed:
                return
            await waiter.wait()
