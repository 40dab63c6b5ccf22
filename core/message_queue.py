"""Async message queue feeding streaming input into long-lived sessions"""
import asyncio
import logging
from collections import deque
from typing import Any, Deque, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_END = object()


class AsyncMessageQueue(Generic[T]):
    """Unbounded single-consumer queue with an async iterator interface.

    Items pushed while the consumer is waiting are handed over directly,
    otherwise they are buffered in FIFO order. Once ``end()`` is called the
    consumer drains what is buffered and then stops; the queue cannot be
    restarted. Only one consumer is supported.
    """

    def __init__(self):
        self._items: Deque[T] = deque()
        self._waiters: Deque[asyncio.Future] = deque()
        self._ended = False

    def push(self, item: T) -> None:
        """Add an item; no-op if the queue has already ended"""
        if self._ended:
            logger.warning("Push on ended message queue ignored")
            return

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(item)
                return

        self._items.append(item)

    def end(self) -> None:
        """Signal that no more items will be pushed"""
        if self._ended:
            return
        self._ended = True

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(_END)

    @property
    def is_finished(self) -> bool:
        return self._ended and not self._items

    def size(self) -> int:
        return len(self._items)

    def __aiter__(self) -> "AsyncMessageQueue[T]":
        return self

    async def __anext__(self) -> T:
        if self._items:
            return self._items.popleft()

        if self._ended:
            raise StopAsyncIteration

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        item: Any = await waiter

        if item is _END:
            raise StopAsyncIteration
        return item
