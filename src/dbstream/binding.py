"""
Type binding and row materialization.

A TypeBinding is the compiled mapping from the ordinals of a cursor to the
fields of a target shape. It is built once per operation (or taken from
the binding cache) and then applied to every row buffer:

    binding = bind(Person, [('Label', 'Name')], cursor)
    person = materialize(binding, row)

Row buffers handed to materialize hold the values of binding.columns, in
that order. Setters are compiled once per (shape, field) and cached.
"""
import dataclasses
import inspect
import logging
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar

import cachetools
from dbstream.cache import cacheable_binding
from dbstream.columns import ColumnMapping, column_names, resolve_columns
from dbstream.cursor import as_cursor
from dbstream.exceptions import BindingError, MaterializationError
from dbstream.exceptions import ValidationError
from dbstream.types import is_null

__all__ = [
    'TypeBinding',
    'bind',
    'materialize',
    'shape_fields',
    'compile_setter',
    'normalize_aliases',
]

logger = logging.getLogger(__name__)

Setter = Callable[[Any, Any], None]

_setter_cache = cachetools.LRUCache(maxsize=4096)
_setter_lock = threading.RLock()


@dataclass(frozen=True)
class TypeBinding:
    """Compiled, immutable binding of a shape to the live columns.

    Attributes:
        shape: The target class (or dict)
        columns: Resolved columns in ascending ordinal order; one row
            buffer slot per column
        setters: (slot, field, setter) triples applied in order
        factory: Zero-argument callable creating a new instance
    """
    shape: type
    columns: tuple[ColumnMapping, ...]
    setters: tuple[tuple[int, str, Setter], ...]
    factory: Callable[[], Any]

    @property
    def ordinals(self) -> tuple[int, ...]:
        return tuple(c.ordinal for c in self.columns)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    @property
    def fields(self) -> tuple[str, ...]:
        return tuple(field for _, field, _ in self.setters)

    @property
    def width(self) -> int:
        """Length of the row buffer this binding reads."""
        return len(self.columns)

    def materialize(self, row: Sequence[Any]) -> Any:
        return materialize(self, row)


def _is_classvar(annotation: Any) -> bool:
    if isinstance(annotation, str):
        return annotation.startswith(('ClassVar', 'typing.ClassVar'))
    return annotation is ClassVar or getattr(annotation, '__origin__', None) is ClassVar


def shape_fields(shape: type) -> tuple[str, ...]:
    """Return the bindable field names of a shape, in declaration order.

    Dataclass fields, else public annotated attributes across the MRO and
    __slots__ members, followed by writable properties.
    """
    if dataclasses.is_dataclass(shape):
        return tuple(f.name for f in dataclasses.fields(shape))

    names: dict[str, None] = {}
    for klass in reversed(shape.__mro__):
        if klass is object:
            continue
        for name, annotation in vars(klass).get('__annotations__', {}).items():
            if not name.startswith('_') and not _is_classvar(annotation):
                names[name] = None
        slots = vars(klass).get('__slots__', ())
        if isinstance(slots, str):
            slots = (slots,)
        for name in slots:
            if not name.startswith('_'):
                names[name] = None

    for klass in reversed(shape.__mro__):
        for name, attr in vars(klass).items():
            if isinstance(attr, property) and attr.fset is not None and not name.startswith('_'):
                names[name] = None

    return tuple(names)


def _check_factory(shape: type) -> Callable[[], Any]:
    """Ensure the shape can be built without arguments."""
    if inspect.isabstract(shape):
        raise BindingError(f'{shape.__qualname__} is abstract and cannot be constructed')
    try:
        signature = inspect.signature(shape)
    except (TypeError, ValueError):
        return shape

    required = [
        p.name for p in signature.parameters.values()
        if p.default is p.empty
        and p.kind not in (p.VAR_POSITIONAL, p.VAR_KEYWORD)
    ]
    if required:
        raise BindingError(
            f'{shape.__qualname__} has no usable zero-argument constructor '
            f'(required: {", ".join(required)})')
    return shape


@cachetools.cached(_setter_cache, lock=_setter_lock)
def compile_setter(shape: type, field: str) -> Setter:
    """Build the direct write operation for one field of a shape.
    """
    if issubclass(shape, dict):
        def set_item(obj, value):
            obj[field] = value
        return set_item

    params = getattr(shape, '__dataclass_params__', None)
    if params is not None and params.frozen:
        def set_frozen(obj, value):
            object.__setattr__(obj, field, value)
        return set_frozen

    attr = inspect.getattr_static(shape, field, None)
    if isinstance(attr, property):
        if attr.fset is None:
            raise BindingError(f'Property {shape.__qualname__}.{field} is read-only')
        return attr.fset
    if inspect.ismemberdescriptor(attr):
        return attr.__set__

    def set_attr(obj, value):
        setattr(obj, field, value)
    return set_attr


def normalize_aliases(aliases: Any) -> tuple[tuple[str, str | None], ...]:
    """Turn an alias list or mapping into a hashable tuple of pairs.
    """
    if aliases is None:
        return ()
    if isinstance(aliases, Mapping):
        aliases = aliases.items()
    if isinstance(aliases, (str, bytes)):
        raise ValidationError('aliases must be (field, column) pairs, not a string')
    normalized = []
    for pair in aliases:
        try:
            field, column = pair
        except (TypeError, ValueError):
            raise ValidationError(f'Invalid alias entry: {pair!r}') from None
        if not isinstance(field, str) or not field.strip():
            raise ValidationError(f'Alias field must be a non-empty string: {pair!r}')
        if column is not None and not isinstance(column, str):
            raise ValidationError(f'Alias column must be a string or None: {pair!r}')
        normalized.append((field, column))
    return tuple(normalized)


def _field_map(shape: type, aliases: tuple, names: tuple[str, ...]) -> dict[str, str]:
    """Effective field -> column name map after applying overrides."""
    if issubclass(shape, dict):
        field_map = {n: n for n in names}
        known = None
    else:
        known = shape_fields(shape)
        field_map = {f: f for f in known}

    for field, column in aliases:
        if known is not None and field not in known:
            raise BindingError(f'{shape.__qualname__} has no field {field!r}')
        if column is None:
            field_map.pop(field, None)
        else:
            field_map[field] = column
    return field_map


@cacheable_binding
def _build_binding(shape: type, aliases: tuple, names: tuple[str, ...],
                   ignore_missing: bool) -> TypeBinding:
    factory = _check_factory(shape)
    field_map = _field_map(shape, aliases, names)

    resolved = resolve_columns(names, field_map.values(), sort=False,
                               ignore_missing=ignore_missing)
    by_key = {m.name.upper(): m for m in resolved}

    pairs = [
        (by_key[column.upper()], field)
        for field, column in field_map.items()
        if column.upper() in by_key
    ]
    columns = tuple(sorted({m for m, _ in pairs}, key=lambda m: m.ordinal))
    slot = {m.ordinal: i for i, m in enumerate(columns)}
    setters = tuple(
        (slot[m.ordinal], field, compile_setter(shape, field))
        for m, field in sorted(pairs, key=lambda p: p[0].ordinal)
    )

    if not setters:
        logger.debug(f'No fields of {shape.__qualname__} matched columns {list(names)}')
    else:
        logger.debug(f'Bound {shape.__qualname__}: '
                     f'{", ".join(f"{f}<-{columns[i].name}" for i, f, _ in setters)}')

    return TypeBinding(shape=shape, columns=columns, setters=setters, factory=factory)


def bind(shape: type, aliases: Iterable | Mapping | None = None, source: Any = None,
         ignore_missing: bool = True, cache: bool = True) -> TypeBinding:
    """Bind a shape to the live columns of a cursor.

    Args:
        shape: Class with a zero-argument constructor, or dict
        aliases: Optional (field, column) overrides; a None column
            excludes the field from binding
        source: A cursor or any source accepted by as_cursor, or the
            sequence of live column names
        ignore_missing: Drop fields whose column is absent instead of
            raising MissingColumnsError
        cache: Reuse a binding built earlier for the same signature

    Returns
        TypeBinding
    """
    if shape is None:
        raise ValidationError('shape is required')
    if not isinstance(shape, type):
        raise ValidationError(f'shape must be a class, got {type(shape).__name__}')
    if source is None:
        raise ValidationError('cursor is required')

    if isinstance(source, (list, tuple)):
        names = tuple(source)
    else:
        names = column_names(as_cursor(source))

    return _build_binding(shape, normalize_aliases(aliases), names, ignore_missing,
                          bypass_cache=not cache)


def materialize(binding: TypeBinding, row: Sequence[Any]) -> Any:
    """Create a new instance of the bound shape from a row buffer.

    Null-markers in the row are written as None. A failing setter raises
    MaterializationError naming the field.
    """
    obj = binding.factory()
    for slot, field, setter in binding.setters:
        value = row[slot]
        if is_null(value):
            value = None
        try:
            setter(obj, value)
        except Exception as exc:
            raise MaterializationError(field) from exc
    return obj
