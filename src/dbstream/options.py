from dataclasses import dataclass, fields, replace
from typing import Any

from dbstream.cancellation import CancelPolicy
from dbstream.pool import BufferPool, NullPool, get_shared_pool

from libb import ConfigOptions

__all__ = [
    'StreamOptions',
    'DEFAULT_PAGE_SIZE',
    'resolve_options',
]

DEFAULT_PAGE_SIZE = 200


@dataclass
class StreamOptions(ConfigOptions):
    """Options

    - page_size: Capacity of the bounded queue between the draining and
      transform stages (default: 200)
    - pool: Row buffer pool; None uses the shared pool, False disables
      pooling, or pass a BufferPool/NullPool instance
    - cancel_policy: CancelPolicy.RAISE or CancelPolicy.STOP, or their
      string values 'raise'/'stop'
    - ignore_missing: Drop requested columns that are not in the result
      set instead of raising (default: True)
    - cache_bindings: Reuse compiled bindings across operations (default: True)
    - offload_reads: Advance the cursor on a dedicated worker thread so
      blocking fetches do not stall the event loop (default: True). Turn
      off for cursors bound to the creating thread, such as sqlite3
      connections opened with check_same_thread=True
    """
    page_size: int = DEFAULT_PAGE_SIZE
    pool: Any = None
    cancel_policy: CancelPolicy = CancelPolicy.RAISE
    ignore_missing: bool = True
    cache_bindings: bool = True
    offload_reads: bool = True

    def __post_init__(self):
        if isinstance(self.page_size, bool) or not isinstance(self.page_size, int):
            raise ValueError(f'page_size must be an integer, got {self.page_size!r}')
        if self.page_size < 1:
            raise ValueError(f'page_size must be at least 1, got {self.page_size}')
        if not isinstance(self.cancel_policy, CancelPolicy):
            try:
                self.cancel_policy = CancelPolicy(self.cancel_policy)
            except ValueError:
                available = [p.value for p in CancelPolicy]
                raise ValueError(f'cancel_policy must be one of: {available}') from None
        if self.pool is False:
            self.pool = NullPool()
        elif self.pool is None:
            self.pool = get_shared_pool()
        elif not isinstance(self.pool, (BufferPool, NullPool)):
            if not (hasattr(self.pool, 'rent') and hasattr(self.pool, 'release')):
                raise ValueError('pool must provide rent() and release()')


_OPTION_NAMES = frozenset(f.name for f in fields(StreamOptions))


def resolve_options(options: StreamOptions | None = None, **overrides: Any) -> StreamOptions:
    """Combine an options object with keyword overrides.

    Unknown keywords raise TypeError. A new StreamOptions is always
    returned so the caller's instance is never mutated.
    """
    unknown = set(overrides) - _OPTION_NAMES
    if unknown:
        raise TypeError(f'Unknown stream options: {", ".join(sorted(unknown))}')
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if options is None:
        return StreamOptions(**overrides)
    return replace(options, **overrides)
