"""
Column resolution against the active result set of a cursor.

Requested names are matched case-insensitively (upper-case comparison)
and resolved to the actual stored casing and its ordinal.
"""
import logging
from collections.abc import Iterable
from typing import Any, NamedTuple

from dbstream.exceptions import MissingColumnsError, ValidationError

__all__ = [
    'ColumnMapping',
    'column_names',
    'ordinal_mapping',
    'resolve_columns',
]

logger = logging.getLogger(__name__)


class ColumnMapping(NamedTuple):
    """A live column: its actual name and zero-based ordinal."""
    name: str
    ordinal: int


def column_names(cursor: Any) -> tuple[str, ...]:
    """Return the column names of the cursor's result set in physical order.
    """
    if cursor is None:
        raise ValidationError('cursor is required')
    return tuple(cursor.column_name(i) for i in range(cursor.column_count()))


def ordinal_mapping(cursor: Any) -> tuple[ColumnMapping, ...]:
    """Return the (name, ordinal) mapping for every column of the cursor.
    """
    return tuple(ColumnMapping(n, i) for i, n in enumerate(column_names(cursor)))


def _normalize(requested: Iterable[str]) -> dict[str, str]:
    """Map upper-cased requested names to the caller's spelling, dropping repeats."""
    normalized: dict[str, str] = {}
    for name in requested:
        if name is None or not str(name).strip():
            raise ValidationError('Column names cannot be None or whitespace only.')
        normalized.setdefault(str(name).upper(), str(name))
    return normalized


def resolve_columns(
    names: Iterable[str],
    requested: Iterable[str],
    sort: bool = False,
    ignore_missing: bool = True,
) -> tuple[ColumnMapping, ...]:
    """Match requested column names against the live column names.

    Args:
        names: Live column names in physical order
        requested: Column names asked for by the caller, any casing
        sort: If True order the result by ordinal ascending, otherwise
            keep the order of the request
        ignore_missing: If True drop unmatched names, otherwise raise a
            MissingColumnsError listing every unmatched name

    Returns
        Tuple of ColumnMapping with the actual stored casing
    """
    if requested is None:
        raise ValidationError('requested column names are required')

    wanted = _normalize(requested)
    if not wanted:
        return ()

    actual: dict[str, ColumnMapping] = {}
    for ordinal, name in enumerate(names):
        # first physical occurrence wins for duplicate column names
        actual.setdefault(name.upper(), ColumnMapping(name, ordinal))

    missing = [key for key in wanted if key not in actual]
    if missing and not ignore_missing:
        raise MissingColumnsError(wanted[key] for key in missing)

    if missing:
        logger.debug(f'Ignoring unmatched columns: {", ".join(wanted[k] for k in missing)}')

    if sort:
        wanted_set = set(wanted)
        return tuple(m for m in sorted(actual.values(), key=lambda m: m.ordinal)
                     if m.name.upper() in wanted_set)

    return tuple(actual[key] for key in wanted if key in actual)
