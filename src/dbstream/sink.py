"""
Downstream consumers of materialized items.

Both adapters satisfy the Sink protocol used by the pipeline:

- Channel: a bounded asynchronous queue. The pipeline writes into it, a
  consumer reads from it (async iteration), and the writer side is closed
  exactly once with complete(count) or fault(error).
- ActionSink: a push-based stage that hands every item to a handler
  (sync or async) as it is written.
"""
import asyncio
import inspect
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from dbstream.exceptions import SinkClosedError

__all__ = [
    'Sink',
    'Channel',
    'ActionSink',
]

logger = logging.getLogger(__name__)


@runtime_checkable
class Sink(Protocol):
    """Capability the pipeline delivers into.

    Exactly one of complete/fault is called per operation.
    """

    async def write(self, item: Any) -> None: ...

    def complete(self, count: int) -> None: ...

    def fault(self, error: BaseException) -> None: ...


class _Signal:
    """Terminal outcome bookkeeping shared by the sink adapters.
    """

    def __init__(self) -> None:
        self._done = False
        self._count: int | None = None
        self._error: BaseException | None = None
        self._joiners: deque[asyncio.Future] = deque()

    @property
    def is_completed(self) -> bool:
        """True once complete() or fault() was called."""
        return self._done

    @property
    def count(self) -> int | None:
        """Item count passed to complete(), None until then."""
        return self._count

    @property
    def error(self) -> BaseException | None:
        return self._error

    def _signal(self, count: int | None, error: BaseException | None) -> None:
        if self._done:
            raise SinkClosedError(f'{type(self).__name__} was already completed')
        self._done = True
        self._count = count
        self._error = error

    def _finished(self) -> bool:
        return self._done

    def _wake_joiners(self) -> None:
        if self._finished():
            _wake_all(self._joiners)

    async def join(self) -> int | None:
        """Wait for the terminal signal.

        Returns the completed count, or raises the fault.
        """
        while not self._finished():
            await _wait(self._joiners)
        if self._error is not None:
            raise self._error
        return self._count


def _wake_all(waiters: deque) -> None:
    while waiters:
        waiter = waiters.popleft()
        if not waiter.done():
            waiter.set_result(None)


async def _wait(waiters: deque) -> None:
    waiter = asyncio.get_running_loop().create_future()
    waiters.append(waiter)
    try:
        await waiter
    finally:
        if waiter in waiters:
            waiters.remove(waiter)


class Channel(_Signal):
    """Bounded asynchronous FIFO queue.

    Writers suspend while the channel holds capacity items; readers
    suspend while it is empty and not yet completed. A capacity of None
    makes the channel unbounded.

    Readers drain buffered items after complete(); after fault() the
    buffered items are still readable and the fault is raised once they
    are exhausted.
    """

    def __init__(self, capacity: int | None = None) -> None:
        super().__init__()
        if capacity is not None and capacity < 1:
            raise ValueError(f'capacity must be at least 1, got {capacity}')
        self.capacity = capacity
        self._items: deque = deque()
        self._putters: deque[asyncio.Future] = deque()
        self._getters: deque[asyncio.Future] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def _full(self) -> bool:
        return self.capacity is not None and len(self._items) >= self.capacity

    def _finished(self) -> bool:
        return self._done and not self._items

    @property
    def room(self) -> int | None:
        """Free slots before a write would suspend; None when unbounded."""
        if self.capacity is None:
            return None
        return max(self.capacity - len(self._items), 0)

    @property
    def writable(self) -> bool:
        """True when wait_to_write() would return without suspending."""
        return self._done or not self._full()

    @property
    def readable(self) -> bool:
        """True when wait_to_read() would return without suspending."""
        return self._done or bool(self._items)

    # writer side

    async def wait_to_write(self) -> bool:
        """Suspend until there is room for one item.

        Returns False if the channel was completed instead.
        """
        while not self._done and self._full():
            await _wait(self._putters)
        return not self._done

    def try_write(self, item: Any) -> bool:
        """Append an item if there is room, without suspending."""
        if self._done:
            raise SinkClosedError('Cannot write to a completed channel')
        if self._full():
            return False
        self._items.append(item)
        _wake_all(self._getters)
        return True

    async def write(self, item: Any) -> None:
        """Append an item, suspending while the channel is full."""
        while not self.try_write(item):
            await _wait(self._putters)

    def complete(self, count: int | None = None) -> None:
        """Mark the channel complete; no more items will be written."""
        self._signal(count, None)
        logger.debug(f'Channel completed (count={count}, buffered={len(self._items)})')
        self._wake_everyone()

    def fault(self, error: BaseException) -> None:
        """Mark the channel faulted with the causing error."""
        self._signal(None, error)
        logger.debug(f'Channel faulted: {error!r}')
        self._wake_everyone()

    def _wake_everyone(self) -> None:
        _wake_all(self._putters)
        _wake_all(self._getters)
        self._wake_joiners()

    # reader side

    def try_read(self) -> tuple[bool, Any]:
        """Take the next item if one is buffered, without suspending."""
        if not self._items:
            return False, None
        item = self._items.popleft()
        _wake_all(self._putters)
        self._wake_joiners()
        return True, item

    async def wait_to_read(self) -> bool:
        """Suspend until an item is available.

        Returns False once the channel is completed and drained; raises
        the fault if it was faulted.
        """
        while not self._items:
            if self._done:
                if self._error is not None:
                    raise self._error
                return False
            await _wait(self._getters)
        return True

    async def read(self) -> Any:
        """Take the next item, suspending while the channel is empty."""
        if not await self.wait_to_read():
            raise SinkClosedError('Channel is completed and empty')
        _, item = self.try_read()
        return item

    def drain(self) -> list:
        """Remove and return every buffered item without suspending."""
        items = list(self._items)
        self._items.clear()
        _wake_all(self._putters)
        self._wake_joiners()
        return items

    async def __aiter__(self) -> AsyncIterator[Any]:
        while await self.wait_to_read():
            ok, item = self.try_read()
            if ok:
                yield item

    async def read_all(self, handler: Callable[[Any], Any] | None = None) -> int:
        """Read until completion, passing each item to handler.

        Returns the number of items read.
        """
        count = 0
        async for item in self:
            if handler is not None:
                result = handler(item)
                if inspect.isawaitable(result):
                    await result
            count += 1
        return count

    async def to_list(self) -> list:
        return [item async for item in self]

    def __repr__(self) -> str:
        return (f'Channel(capacity={self.capacity}, buffered={len(self._items)}, '
                f'completed={self._done})')


class ActionSink(_Signal):
    """Push-based sink that runs a handler for every written item.

    The handler may be a plain function or a coroutine function. A
    handler exception propagates out of write() and faults the pipeline.
    """

    def __init__(self, handler: Callable[[Any], Awaitable[Any] | Any]) -> None:
        super().__init__()
        if handler is None:
            raise ValueError('handler is required')
        self.handler = handler
        self.written = 0

    async def write(self, item: Any) -> None:
        if self._done:
            raise SinkClosedError('Cannot write to a completed sink')
        result = self.handler(item)
        if inspect.isawaitable(result):
            await result
        self.written += 1

    def complete(self, count: int | None = None) -> None:
        self._signal(count, None)
        self._wake_joiners()

    def fault(self, error: BaseException) -> None:
        self._signal(None, error)
        self._wake_joiners()

    def __repr__(self) -> str:
        return f'ActionSink(written={self.written}, completed={self._done})'
