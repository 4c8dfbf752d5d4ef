"""Cooperative cancellation checked at row boundaries and while waiting."""
import asyncio
import enum
import threading

from dbstream.exceptions import PipelineCancelled


class CancelPolicy(enum.Enum):
    """What a stage does once it observes a cancelled token.

    RAISE stops and raises PipelineCancelled, discarding in-flight rows.
    STOP stops cleanly and reports only the rows already delivered.
    """
    RAISE = 'raise'
    STOP = 'stop'


def _resolve(waiter: asyncio.Future) -> None:
    if not waiter.done():
        waiter.set_result(None)


class CancellationToken:
    """A flag that may be set from any thread.

    Stages poll it between rows and await wait() while suspended on a
    queue or sink, so a cancel reaches a pipeline stalled on backpressure.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    def cancel(self) -> None:
        """Request cancellation."""
        with self._lock:
            self._event.set()
            waiters, self._waiters = self._waiters, []
        for loop, waiter in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve, waiter)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled('Operation was cancelled')

    async def wait(self) -> None:
        """Suspend until cancel() is called, from this or any other thread."""
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        entry = (loop, waiter)
        with self._lock:
            if self._event.is_set():
                return
            self._waiters.append(entry)
        try:
            await waiter
        finally:
            with self._lock:
                if entry in self._waiters:
                    self._waiters.remove(entry)

    def __repr__(self) -> str:
        return f'CancellationToken(cancelled={self.cancelled})'
