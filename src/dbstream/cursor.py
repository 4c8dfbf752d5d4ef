"""
Forward-only row cursors.

A cursor is the only thing the draining stage talks to. It exposes the
column names of the active result set and advances one row at a time;
it cannot be rewound or read concurrently.

Adapters are provided for PEP-249 cursors (sqlite3, psycopg), pandas
DataFrames, PyArrow tables and plain in-memory rows.
"""
import logging
from collections.abc import Iterable, Iterator, Sequence
from typing import Any, Protocol, runtime_checkable

import pandas as pd
import pyarrow as pa
from dbstream.exceptions import ValidationError
from dbstream.types import to_python

__all__ = [
    'Cursor',
    'DBAPICursor',
    'DataFrameCursor',
    'ArrowCursor',
    'RowsCursor',
    'as_cursor',
    'IterChunk',
]

logger = logging.getLogger(__name__)


@runtime_checkable
class Cursor(Protocol):
    """Capability the pipeline needs from a result set."""

    def column_count(self) -> int: ...

    def column_name(self, i: int) -> str: ...

    def advance(self) -> bool: ...

    def value(self, ordinal: int) -> Any: ...


class _RowCursor:
    """Shared advance/value logic over an iterator of row sequences.
    """

    def __init__(self, names: Sequence[str], rows: Iterator[Sequence[Any]]) -> None:
        self._names = list(names)
        self._rows = rows
        self._row: Sequence[Any] | None = None
        self._done = False
        self.rows_read = 0

    def column_count(self) -> int:
        return len(self._names)

    def column_name(self, i: int) -> str:
        return self._names[i]

    def advance(self) -> bool:
        if self._done:
            return False
        try:
            self._row = next(self._rows)
        except StopIteration:
            self._row = None
            self._done = True
            return False
        self.rows_read += 1
        return True

    def value(self, ordinal: int) -> Any:
        if self._row is None:
            raise ValidationError('Cursor is not positioned on a row')
        return self._row[ordinal]


def IterChunk(cursor: Any, size: int = 5000) -> Iterator[tuple]:
    """Iterate through DB-API cursor results in chunks."""
    while True:
        chunked = cursor.fetchmany(size)
        if not chunked:
            break
        yield from chunked


class DBAPICursor(_RowCursor):
    """Adapter for any DB-API 2.0 (PEP-249) cursor that has executed a query.

    Column names come from cursor.description; rows are fetched with
    fetchmany in chunks of arraysize.
    """

    def __init__(self, cursor: Any, arraysize: int = 5000) -> None:
        if cursor is None:
            raise ValidationError('cursor is required')
        description = cursor.description or []
        names = [_description_name(d) for d in description]
        rows = IterChunk(cursor, arraysize) if description else iter(())
        if not description:
            logger.debug('DB-API cursor has no result set')
        super().__init__(names, rows)
        self.dbapi_cursor = cursor


def _description_name(column: Any) -> str:
    """Column name from a description entry (tuple or psycopg Column)."""
    name = getattr(column, 'name', None)
    if name is None:
        name = column[0]
    return name


class DataFrameCursor(_RowCursor):
    """Adapter over the rows of a pandas DataFrame.

    NumPy and pandas scalars are converted to native Python values and
    missing values (NaN, NaT, pd.NA) come back as None.
    """

    def __init__(self, df: pd.DataFrame) -> None:
        if df is None:
            raise ValidationError('df is required')
        names = [str(c) for c in df.columns]
        super().__init__(names, df.itertuples(index=False, name=None))

    def value(self, ordinal: int) -> Any:
        return to_python(super().value(ordinal))


class ArrowCursor(_RowCursor):
    """Adapter over a PyArrow Table, RecordBatch or RecordBatchReader.

    Rows are materialized one record batch at a time.
    """

    def __init__(self, source: pa.Table | pa.RecordBatch | pa.RecordBatchReader) -> None:
        if source is None:
            raise ValidationError('source is required')
        if isinstance(source, pa.RecordBatch):
            batches = iter([source])
        elif isinstance(source, pa.Table):
            batches = iter(source.to_batches())
        else:
            batches = iter(source)
        super().__init__(source.schema.names, self._iter_rows(batches))

    @staticmethod
    def _iter_rows(batches: Iterator[pa.RecordBatch]) -> Iterator[tuple]:
        for batch in batches:
            columns = [batch.column(i).to_pylist() for i in range(batch.num_columns)]
            yield from zip(*columns)


class RowsCursor(_RowCursor):
    """In-memory cursor over column names and an iterable of rows.
    """

    def __init__(self, columns: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
        if columns is None:
            raise ValidationError('columns is required')
        if rows is None:
            raise ValidationError('rows is required')
        super().__init__(columns, iter(rows))


def as_cursor(source: Any) -> Cursor:
    """Wrap a supported result source in a Cursor.

    Objects that already satisfy the Cursor protocol are returned as-is.
    """
    if source is None:
        raise ValidationError('cursor is required')
    if isinstance(source, Cursor):
        return source
    if isinstance(source, pd.DataFrame):
        return DataFrameCursor(source)
    if isinstance(source, (pa.Table, pa.RecordBatch, pa.RecordBatchReader)):
        return ArrowCursor(source)
    if hasattr(source, 'description') and hasattr(source, 'fetchmany'):
        return DBAPICursor(source)
    raise ValidationError(f'Unsupported cursor type: {type(source).__name__}')
