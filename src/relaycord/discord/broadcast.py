"""Fan-out primitives for gateway packets and cache notifications.

A publisher owns one `Broadcast`; each subscriber gets its own queue, so a
slow subscriber never delays the publisher or the other subscribers.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Generic, Optional, TypeVar

T = TypeVar("T")

_CLOSED: Any = object()


class Subscription(Generic[T]):
    def __init__(self, owner: "Broadcast[T]") -> None:
        self._owner: Optional[Broadcast[T]] = owner
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._finished = False

    def _deliver(self, item: Any) -> None:
        self._queue.put_nowait(item)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> T:
        """Return the next item, raising `StopAsyncIteration` once closed."""
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if self._owner is not None:
            self._owner._detach(self)
            self._owner = None
        if not self._finished:
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        return await self.get()


class Broadcast(Generic[T]):
    """One publisher, many independent subscribers, no replay."""

    def __init__(self) -> None:
        self._subscribers: list[Subscription[T]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self)
        if self._closed:
            subscription.close()
        else:
            self._subscribers.append(subscription)
        return subscription

    def publish(self, item: T) -> None:
        if self._closed:
            return
        for subscription in list(self._subscribers):
            subscription._deliver(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription._owner = None
            subscription.close()

    def _detach(self, subscription: Subscription[T]) -> None:
        try:
            self._subscribers.remove(subscription)
        except ValueError:
            pass


class CurrentValue(Broadcast[T]):
    """Broadcast with a single-slot latest value replayed on subscribe."""

    def __init__(self, initial: T, *, distinct: bool = False) -> None:
        super().__init__()
        self._value = initial
        self._distinct = distinct

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self) -> Subscription[T]:
        subscription = super().subscribe()
        if not self._closed:
            subscription._deliver(self._value)
        return subscription

    def set(self, value: T) -> bool:
        if self._distinct and value == self._value:
            return False
        self._value = value
        self.publish(value)
        return True
