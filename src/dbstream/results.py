"""
Synchronous, pull-based access to cursor results.

Nothing here runs concurrently: rows are read, transformed and handed to
the caller one at a time. Each call starts a new operation; a sequence is
never restartable mid-stream.
"""
import logging
from collections import deque
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from dbstream.binding import bind, materialize
from dbstream.cancellation import CancellationToken, CancelPolicy
from dbstream.columns import column_names, ordinal_mapping, resolve_columns
from dbstream.cursor import as_cursor
from dbstream.exceptions import ValidationError
from dbstream.options import StreamOptions, resolve_options

__all__ = [
    'Record',
    'QueryResult',
    'for_each',
    'iter_results',
    'iter_rows',
    'retrieve',
]

logger = logging.getLogger(__name__)


class Record(Mapping):
    """Read-only view of one row.

    Values can be looked up by column name (case-insensitive) or ordinal.
    The view is only valid inside the call it was handed to; the
    underlying buffer is reused afterwards. Keep detach() or
    values_list() instead of the view itself. A pipeline transform that
    returns the view unchanged is given a detached copy automatically.
    """

    __slots__ = ('_names', '_index', '_values')

    def __init__(self, names: Sequence[str], values: Sequence[Any],
                 index: dict[str, int] | None = None) -> None:
        self._names = names
        self._values = values
        self._index = index if index is not None else name_index(names)

    def __getitem__(self, key: str | int) -> Any:
        if isinstance(key, int):
            return self._values[key]
        try:
            return self._values[self._index[key.upper()]]
        except KeyError:
            raise KeyError(key) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._names)

    def __len__(self) -> int:
        return len(self._names)

    @property
    def names(self) -> Sequence[str]:
        return self._names

    def values_list(self) -> list:
        """Copy of the row values, safe to keep."""
        return list(self._values[:len(self._names)])

    def detach(self) -> 'Record':
        """Record over a private copy of the values, safe to keep."""
        return Record(self._names, self.values_list(), self._index)

    def to_dict(self) -> dict[str, Any]:
        return dict(zip(self._names, self._values))

    def __repr__(self) -> str:
        return f'Record({self.to_dict()!r})'


def name_index(names: Sequence[str]) -> dict[str, int]:
    index: dict[str, int] = {}
    for i, name in enumerate(names):
        index.setdefault(name.upper(), i)
    return index


def _check_cancelled(token: CancellationToken, policy: CancelPolicy) -> bool:
    """Return True if iteration should stop; raise under the RAISE policy."""
    if not token.cancelled:
        return False
    if policy is CancelPolicy.RAISE:
        token.raise_if_cancelled()
    logger.warning('Iteration cancelled, stopping')
    return True


def _copy_row(cursor: Any, ordinals: Sequence[int], buffer: list) -> None:
    for slot, ordinal in enumerate(ordinals):
        buffer[slot] = cursor.value(ordinal)


def for_each(cursor: Any, handler: Callable[[Record], Any],
             token: CancellationToken | None = None,
             policy: CancelPolicy | str | None = None,
             options: StreamOptions | None = None) -> int:
    """Call handler for every remaining row of the cursor.

    Cancellation is observed between rows. A row that was already read
    when cancellation is noticed is still handed to the handler before
    iteration halts.

    Returns
        Number of rows handled
    """
    if handler is None:
        raise ValidationError('handler is required')
    cursor = as_cursor(cursor)
    options = resolve_options(options, cancel_policy=policy)
    token = token or CancellationToken()
    pool = options.pool

    if _check_cancelled(token, options.cancel_policy):
        return 0

    mapping = ordinal_mapping(cursor)
    names = tuple(m.name for m in mapping)
    ordinals = tuple(m.ordinal for m in mapping)
    index = name_index(names)

    count = 0
    while cursor.advance():
        buffer = pool.rent(len(ordinals))
        try:
            _copy_row(cursor, ordinals, buffer)
            handler(Record(names, buffer, index))
        finally:
            pool.release(buffer)
        count += 1
        if _check_cancelled(token, options.cancel_policy):
            break
    return count


def iter_rows(cursor: Any, ordinals: Iterable[int] | None = None,
              token: CancellationToken | None = None,
              options: StreamOptions | None = None, **kw: Any) -> Iterator[list]:
    """Lazily yield the raw values of each row as a new list.

    With ordinals, only those columns are read, in the given order; an
    empty selection yields an empty list per row.
    """
    cursor = as_cursor(cursor)
    options = resolve_options(options, **kw)
    token = token or CancellationToken()
    if ordinals is None:
        ordinals = range(cursor.column_count())
    ordinals = tuple(ordinals)

    def generate():
        while not _check_cancelled(token, options.cancel_policy) and cursor.advance():
            row = [None] * len(ordinals)
            _copy_row(cursor, ordinals, row)
            yield row

    return generate()


def iter_results(cursor: Any, shape: type, aliases: Any = None,
                 token: CancellationToken | None = None,
                 options: StreamOptions | None = None, **kw: Any) -> Iterator[Any]:
    """Lazily yield an instance of shape for every remaining row.

    Binding happens immediately, so binding errors are raised by this
    call rather than on first iteration.
    """
    cursor = as_cursor(cursor)
    options = resolve_options(options, **kw)
    token = token or CancellationToken()
    binding = bind(shape, aliases, cursor, ignore_missing=options.ignore_missing,
                   cache=options.cache_bindings)
    pool = options.pool
    ordinals = binding.ordinals

    def generate():
        while not _check_cancelled(token, options.cancel_policy) and cursor.advance():
            buffer = pool.rent(len(ordinals))
            try:
                _copy_row(cursor, ordinals, buffer)
                item = materialize(binding, buffer)
            finally:
                pool.release(buffer)
            yield item

    return generate()


@dataclass
class QueryResult:
    """Fully buffered rows of one result set.

    rows holds one list per row with the values of the selected ordinals.
    """
    ordinals: tuple[int, ...]
    names: tuple[str, ...]
    rows: deque = field(default_factory=deque)

    def __len__(self) -> int:
        return len(self.rows)

    def results(self, shape: type, aliases: Any = None,
                ignore_missing: bool = True) -> Iterator[Any]:
        """Dequeue the rows, materializing each one as it is consumed.

        References to buffered rows are released as iteration proceeds.
        """
        binding = bind(shape, aliases, list(self.names), ignore_missing=ignore_missing)
        slots = [self.names.index(name) for name in binding.names]

        def generate():
            while self.rows:
                row = self.rows.popleft()
                yield materialize(binding, [row[s] for s in slots])

        return generate()


def retrieve(cursor: Any, columns: Iterable[str] | None = None,
             ignore_missing: bool = False,
             token: CancellationToken | None = None) -> QueryResult:
    """Read the remaining rows of the cursor into a QueryResult.

    Args:
        cursor: The cursor to drain
        columns: Optional column names to keep, in the requested order;
            all columns when omitted
        ignore_missing: Drop unknown columns instead of raising
        token: Optional cancellation token (RAISE policy)
    """
    cursor = as_cursor(cursor)
    if columns is None:
        mapping = ordinal_mapping(cursor)
    else:
        mapping = resolve_columns(column_names(cursor), columns,
                                  ignore_missing=ignore_missing)
    ordinals = tuple(m.ordinal for m in mapping)
    result = QueryResult(ordinals, tuple(m.name for m in mapping))
    result.rows.extend(iter_rows(cursor, ordinals, token=token))
    logger.debug(f'Retrieved {len(result)} rows ({len(ordinals)} columns)')
    return result
