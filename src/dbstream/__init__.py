"""
Result transformation and streaming for tabular cursors.

Rows are read from a forward-only cursor, mapped onto a caller-specified
class and delivered either synchronously or through a bounded,
backpressured asynchronous pipeline:

- Synchronous: db.iter_results(cursor, Person), db.for_each(cursor, fn)
- Asynchronous: await db.pipe_results_to(cursor, sink, Person),
  db.as_channel(cursor, Person), db.aiter_results(cursor, Person)

Cursors may be DB-API cursors (sqlite3, psycopg), pandas DataFrames,
PyArrow tables or any object with the Cursor methods.
"""
__version__ = '0.1.0'

from typing import Any

from dbstream.binding import TypeBinding, bind, materialize
from dbstream.cache import Cache
from dbstream.cancellation import CancellationToken, CancelPolicy
from dbstream.columns import ColumnMapping, column_names, resolve_columns
from dbstream.cursor import ArrowCursor, Cursor, DataFrameCursor, DBAPICursor
from dbstream.cursor import RowsCursor, as_cursor
from dbstream.exceptions import BindingError, MaterializationError
from dbstream.exceptions import MissingColumnsError, PipelineCancelled, PoolError
from dbstream.exceptions import SinkClosedError, StreamError, ValidationError
from dbstream.options import StreamOptions
from dbstream.pipeline import Pipeline, PipelineState, aiter_results, as_channel
from dbstream.pipeline import pipe_results_to, pipe_rows_to
from dbstream.pool import BufferPool, NullPool, get_shared_pool
from dbstream.results import QueryResult, Record, for_each, iter_results
from dbstream.results import iter_rows, retrieve
from dbstream.sink import ActionSink, Channel, Sink


def results(cursor: Any, shape: type, aliases: Any = None, **kwargs: Any) -> list:
    """Read every remaining row of the cursor into a list of shape instances.
    """
    return list(iter_results(cursor, shape, aliases, **kwargs))


def to_channel(cursor: Any, sink: Sink, shape: type | None = None,
               aliases: Any = None, **kwargs: Any):
    """Stream the cursor into a sink. Returns an awaitable of the item count.
    """
    return pipe_results_to(cursor, sink, shape, aliases, **kwargs)


def clear_caches() -> None:
    """Drop every cached type binding.
    """
    Cache.get_instance().clear_all()


__all__ = [
    'results',
    'to_channel',
    'clear_caches',
    'iter_results',
    'iter_rows',
    'for_each',
    'retrieve',
    'pipe_results_to',
    'pipe_rows_to',
    'as_channel',
    'aiter_results',
    'bind',
    'materialize',
    'resolve_columns',
    'column_names',
    'as_cursor',
    'Cursor',
    'DBAPICursor',
    'DataFrameCursor',
    'ArrowCursor',
    'RowsCursor',
    'Sink',
    'Channel',
    'ActionSink',
    'Pipeline',
    'PipelineState',
    'TypeBinding',
    'ColumnMapping',
    'QueryResult',
    'Record',
    'StreamOptions',
    'CancellationToken',
    'CancelPolicy',
    'BufferPool',
    'NullPool',
    'get_shared_pool',
    'StreamError',
    'ValidationError',
    'BindingError',
    'MissingColumnsError',
    'MaterializationError',
    'PipelineCancelled',
    'PoolError',
    'SinkClosedError',
]
