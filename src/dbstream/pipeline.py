"""
Streaming pipeline: drain a cursor, transform rows, deliver to a sink.

One Pipeline instance is one operation. The draining stage is the only
code that touches the cursor; it copies each row into a buffer rented
from the pool and enqueues it on a bounded Channel. Cursor reads run on
a single worker thread so a blocking fetch never stalls the event loop. The transform stage
dequeues buffers in FIFO order, turns each into an item, releases the
buffer and writes the item to the sink. Both stages run as asyncio tasks
joined by the queue, so a full queue suspends the cursor and an empty
queue suspends the transform.

Whatever happens, the sink receives exactly one of complete(count) or
fault(error), every rented buffer is released, and a fault is re-raised
to the caller of run().
"""
import asyncio
import enum
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from dbstream.binding import TypeBinding, bind
from dbstream.cancellation import CancellationToken, CancelPolicy
from dbstream.columns import column_names, ordinal_mapping, resolve_columns
from dbstream.cursor import as_cursor
from dbstream.exceptions import PipelineCancelled, StreamError, ValidationError
from dbstream.options import StreamOptions, resolve_options
from dbstream.results import Record, name_index
from dbstream.sink import Channel, Sink

__all__ = [
    'Pipeline',
    'PipelineState',
    'pipe_results_to',
    'pipe_rows_to',
    'as_channel',
    'aiter_results',
]

logger = logging.getLogger(__name__)

_background_tasks: set[asyncio.Task] = set()


class PipelineState(enum.Enum):
    IDLE = 'idle'
    DRAINING = 'draining'
    COMPLETED = 'completed'
    FAULTED = 'faulted'


class Pipeline:
    """A single drain-transform-deliver operation.

    Args:
        cursor: Cursor positioned before its first row
        sink: Sink receiving the transformed items
        ordinals: Cursor ordinals copied into each row buffer, in order
        transform: Callable turning a row buffer into an item; the
            buffer must not be retained after it returns
        options: StreamOptions (page size, pool, cancel policy)
        token: Optional CancellationToken checked between rows and raced
            against every queue and sink wait
    """

    def __init__(self, cursor: Any, sink: Sink, ordinals: Sequence[int],
                 transform: Callable[[list], Any],
                 options: StreamOptions | None = None,
                 token: CancellationToken | None = None) -> None:
        if cursor is None:
            raise ValidationError('cursor is required')
        if sink is None:
            raise ValidationError('sink is required')
        if transform is None:
            raise ValidationError('transform is required')
        self.cursor = cursor
        self.sink = sink
        self.ordinals = tuple(ordinals)
        self.transform = transform
        self.options = options or StreamOptions()
        self.pool = self.options.pool
        self.token = token or CancellationToken()
        self.state = PipelineState.IDLE
        self.read = 0
        self.delivered = 0
        self.fault: BaseException | None = None

    @property
    def policy(self) -> CancelPolicy:
        return self.options.cancel_policy

    def _record_fault(self, exc: BaseException) -> None:
        """Keep the first fault raised by either stage."""
        if self.fault is None:
            self.fault = exc

    def _stop_requested(self) -> bool:
        """Row-boundary cancellation check."""
        if not self.token.cancelled:
            return False
        if self.policy is CancelPolicy.RAISE:
            self.token.raise_if_cancelled()
        logger.warning(f'Pipeline cancelled after {self.read} rows read, '
                       f'{self.delivered} delivered')
        return True

    async def _until_cancelled(self, awaitable: Awaitable[Any]) -> bool:
        """Await awaitable unless the token is cancelled first.

        Returns False when cancellation won; the awaitable is cancelled and
        the caller applies the cancel policy.
        """
        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self.token.wait())
        try:
            done, _ = await asyncio.wait((work, cancelled),
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [t for t in (work, cancelled) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)
                for task in pending:
                    if not task.cancelled():
                        task.exception()
        if work not in done:
            return False
        work.result()
        return True

    def _release_all(self, buffers: Iterable[list]) -> None:
        for buffer in buffers:
            self.pool.release(buffer)

    def _read_rows(self, limit: int, width: int) -> tuple[list[list], bool]:
        """Advance the cursor up to limit rows, copying each into a buffer.

        Returns the filled buffers and whether the cursor may have more.
        Runs on the drain worker thread when reads are offloaded.
        """
        rows: list[list] = []
        try:
            while len(rows) < limit:
                if self.token.cancelled:
                    return rows, True
                if not self.cursor.advance():
                    return rows, False
                buffer = self.pool.rent(width)
                rows.append(buffer)
                for slot, ordinal in enumerate(self.ordinals):
                    buffer[slot] = self.cursor.value(ordinal)
        except BaseException:
            self._release_all(rows)
            raise
        return rows, True

    async def _read(self, executor: ThreadPoolExecutor | None,
                    limit: int, width: int) -> tuple[list[list], bool]:
        if executor is None:
            return self._read_rows(limit, width)
        future = asyncio.get_running_loop().run_in_executor(
            executor, self._read_rows, limit, width)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # the worker still holds the cursor and its rented buffers
            await asyncio.wait([future])
            if not future.cancelled() and future.exception() is None:
                self._release_all(future.result()[0])
            raise

    async def drain(self, queue: Channel) -> int:
        """Draining stage: move cursor rows into the queue.

        Reads at most as many rows as the queue has room for, so a full
        queue keeps the cursor where it is. Cursor reads run on a single
        worker thread unless offload_reads is off. Stops when the cursor
        is exhausted, the queue is closed by the transform stage, or
        cancellation is observed, including while waiting for room.
        """
        width = len(self.ordinals)
        executor = None
        if self.options.offload_reads:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='dbstream-drain')
        try:
            more = True
            while more:
                if not queue.writable:
                    await self._until_cancelled(queue.wait_to_write())
                if queue.is_completed or self._stop_requested():
                    break
                rows, more = await self._read(executor, queue.room or self.options.page_size, width)
                if queue.is_completed:
                    self._release_all(rows)
                    break
                for i, buffer in enumerate(rows):
                    if not queue.try_write(buffer):
                        self._release_all(rows[i:])
                        raise StreamError('Queue rejected a row after reporting room')
                    self.read += 1
        except BaseException as exc:
            self._record_fault(exc)
            if not queue.is_completed:
                queue.fault(exc)
            raise
        finally:
            if executor is not None:
                executor.shutdown(wait=False)
        if not queue.is_completed:
            queue.complete(self.read)
        return self.read

    async def _write(self, item: Any) -> bool:
        """Hand one item to the sink; False if cancellation interrupted it."""
        if isinstance(self.sink, Channel) and self.sink.try_write(item):
            return True
        return await self._until_cancelled(self.sink.write(item))

    async def deliver(self, queue: Channel) -> int:
        """Transform stage: turn queued buffers into items for the sink.

        The buffer is released before the item is written, including when
        the transform raises. Waits on the queue and the sink give way to
        cancellation.
        """
        try:
            while True:
                if not queue.readable:
                    await self._until_cancelled(queue.wait_to_read())
                if self.fault is not None:
                    break
                if queue.is_completed and not len(queue):
                    break
                if self._stop_requested():
                    break
                ok, buffer = queue.try_read()
                if not ok:
                    continue
                try:
                    item = self.transform(buffer)
                finally:
                    self.pool.release(buffer)
                if not await self._write(item):
                    logger.debug('Sink write interrupted by cancellation')
                    self._stop_requested()
                    break
                self.delivered += 1
        except BaseException as exc:
            self._record_fault(exc)
            if not queue.is_completed:
                queue.fault(exc)
            raise
        if not queue.is_completed:
            queue.complete(self.read)
        return self.delivered

    def _release_buffered(self, queue: Channel) -> None:
        discarded = queue.drain()
        for buffer in discarded:
            self.pool.release(buffer)
        if discarded:
            logger.debug(f'Released {len(discarded)} undelivered row buffers')

    def _finish(self, error: BaseException | None) -> None:
        """Deliver the single completion signal to the sink."""
        if error is None:
            self.state = PipelineState.COMPLETED
            self.sink.complete(self.delivered)
            return
        self.state = PipelineState.FAULTED
        self.sink.fault(error)

    async def run(self) -> int:
        """Run the operation to completion.

        Returns
            Number of items delivered to the sink
        """
        if self.state is not PipelineState.IDLE:
            raise StreamError(f'Pipeline already ran (state={self.state.value})')
        self.state = PipelineState.DRAINING
        start = time.time()
        queue = Channel(self.options.page_size)
        logger.debug(f'Pipeline started (page_size={self.options.page_size}, '
                     f'columns={len(self.ordinals)})')

        tasks = (asyncio.create_task(self.drain(queue)),
                 asyncio.create_task(self.deliver(queue)))
        try:
            await asyncio.wait(tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.wait(tasks)
            for task in tasks:
                if not task.cancelled():
                    task.exception()
            self._release_buffered(queue)
            logger.warning(f'Pipeline task cancelled after {self.delivered} items')
            self._finish(PipelineCancelled('Operation was cancelled'))
            raise

        for task in tasks:
            if not task.cancelled():
                task.exception()
        self._release_buffered(queue)

        error = self.fault
        elapsed = time.time() - start
        if error is None:
            logger.debug(f'Pipeline completed: {self.delivered} items in {elapsed:.4f}s')
        elif isinstance(error, PipelineCancelled):
            logger.warning(f'Pipeline cancelled after {self.delivered} items')
        else:
            logger.error(f'Pipeline faulted after {self.delivered} items: {error!r}')
        self._finish(error)
        if error is not None:
            raise error
        return self.delivered


def _resolve_ordinals(cursor: Any, ordinals: Iterable[int] | None,
                      columns: Iterable[str] | None,
                      ignore_missing: bool) -> tuple[tuple[int, ...], tuple[str, ...]]:
    names = column_names(cursor)
    if columns is not None:
        mapping = resolve_columns(names, columns, ignore_missing=ignore_missing)
        return tuple(m.ordinal for m in mapping), tuple(m.name for m in mapping)
    if ordinals is None:
        return tuple(range(len(names))), names
    ordinals = tuple(ordinals)
    for ordinal in ordinals:
        if not 0 <= ordinal < len(names):
            raise ValidationError(f'Ordinal {ordinal} is out of range for {len(names)} columns')
    return ordinals, tuple(names[o] for o in ordinals)


def _build(cursor: Any, sink: Sink, shape: type | None, aliases: Any,
           transform: Callable[[Record], Any] | None,
           options: StreamOptions, token: CancellationToken | None) -> Pipeline:
    """Validate inputs, bind, and construct the pipeline before any row is read."""
    if sink is None:
        raise ValidationError('sink is required')
    cursor = as_cursor(cursor)

    if transform is not None:
        if shape is not None:
            raise ValidationError('Pass either shape or transform, not both')
        mapping = ordinal_mapping(cursor)
        names = tuple(m.name for m in mapping)
        index = name_index(names)

        def apply(buffer: list) -> Any:
            record = Record(names, buffer, index)
            item = transform(record)
            # the buffer goes back to the pool once this returns
            return record.detach() if item is record else item

        return Pipeline(cursor, sink, [m.ordinal for m in mapping], apply, options, token)

    binding: TypeBinding = bind(shape, aliases, cursor,
                                ignore_missing=options.ignore_missing,
                                cache=options.cache_bindings)
    return Pipeline(cursor, sink, binding.ordinals, binding.materialize, options, token)


async def pipe_results_to(cursor: Any, sink: Sink, shape: type | None = None,
                          aliases: Any = None,
                          transform: Callable[[Record], Any] | None = None,
                          token: CancellationToken | None = None,
                          options: StreamOptions | None = None, **kw: Any) -> int:
    """Stream the cursor's rows into a sink as instances of shape.

    Args:
        cursor: Cursor or any source accepted by as_cursor
        sink: Channel, ActionSink or another Sink
        shape: Target class (or dict)
        aliases: Optional (field, column) overrides; None column excludes
        transform: Instead of shape, a function receiving a Record view.
            The view is backed by a pooled buffer and is only valid during
            the call; return detached data (a returned view itself is
            detached automatically, but nested references are not)
        token: Optional CancellationToken
        options: StreamOptions; keyword arguments override its fields

    Returns
        Number of items delivered
    """
    options = resolve_options(options, **kw)
    pipeline = _build(cursor, sink, shape, aliases, transform, options, token)
    return await pipeline.run()


async def pipe_rows_to(cursor: Any, sink: Sink, ordinals: Iterable[int] | None = None,
                       columns: Iterable[str] | None = None,
                       token: CancellationToken | None = None,
                       options: StreamOptions | None = None, **kw: Any) -> int:
    """Stream raw row values into a sink, one new list per row.

    Select columns by ordinal or by name (request order); with neither,
    all columns are copied. An empty selection still produces one empty
    list per row. Null-markers are passed through untouched.
    """
    if sink is None:
        raise ValidationError('sink is required')
    options = resolve_options(options, **kw)
    cursor = as_cursor(cursor)
    ordinals, _ = _resolve_ordinals(cursor, ordinals, columns, options.ignore_missing)
    return await Pipeline(cursor, sink, ordinals, list, options, token).run()


def _track(task: asyncio.Task) -> None:
    _background_tasks.add(task)

    def done(t: asyncio.Task) -> None:
        _background_tasks.discard(t)
        if not t.cancelled():
            t.exception()

    task.add_done_callback(done)


def as_channel(cursor: Any, shape: type | None = None, aliases: Any = None,
               transform: Callable[[Record], Any] | None = None,
               capacity: int | None = None,
               token: CancellationToken | None = None,
               options: StreamOptions | None = None, **kw: Any) -> Channel:
    """Start streaming in the background and return the channel to read from.

    Must be called from a running event loop. Binding errors are raised
    here; later faults surface when the channel is read. A transform
    receives a Record view that is only valid during the call, as in
    pipe_results_to.
    """
    options = resolve_options(options, **kw)
    channel = Channel(capacity if capacity is not None else options.page_size)
    pipeline = _build(cursor, channel, shape, aliases, transform, options, token)
    _track(asyncio.get_running_loop().create_task(pipeline.run()))
    return channel


def aiter_results(cursor: Any, shape: type | None = None, aliases: Any = None,
                  transform: Callable[[Record], Any] | None = None,
                  token: CancellationToken | None = None,
                  options: StreamOptions | None = None, **kw: Any) -> AsyncIterator[Any]:
    """Asynchronously iterate the materialized items of the cursor.

    The pipeline runs while the caller consumes; leaving the loop early
    stops it and releases every buffer.
    """
    options = resolve_options(options, **kw)
    channel = Channel(options.page_size)
    pipeline = _build(cursor, channel, shape, aliases, transform, options, token)

    async def generate():
        task = asyncio.create_task(pipeline.run())
        try:
            async for item in channel:
                yield item
        finally:
            if not task.done():
                task.cancel()
            await asyncio.wait([task])
            if not task.cancelled():
                task.exception()

    return generate()
