"""
Row buffer pooling.

A pool hands out fixed-length row buffers and takes them back once the
transform stage is done with them. Every rented buffer must be released
exactly once; after release its contents are undefined for the caller.
"""
import logging
import threading
from collections import defaultdict

from dbstream.exceptions import PoolError

__all__ = [
    'BufferPool',
    'NullPool',
    'get_shared_pool',
]

logger = logging.getLogger(__name__)

MAX_BUFFER_LENGTH = 1024 * 1024


class _CountingPool:
    """Rent/release bookkeeping shared by every pool implementation.
    """

    def __init__(self) -> None:
        self._count_lock = threading.Lock()
        self.rented = 0
        self.released = 0

    @property
    def outstanding(self) -> int:
        """Number of buffers rented but not yet released."""
        return self.rented - self.released

    def _check_size(self, min_size: int) -> None:
        if min_size < 0:
            raise ValueError(f'Buffer size must be at least 0, got {min_size}')

    def _count_rent(self) -> None:
        with self._count_lock:
            self.rented += 1

    def _count_release(self) -> None:
        with self._count_lock:
            if self.released >= self.rented:
                raise PoolError('Buffer released more times than it was rented')
            self.released += 1


class NullPool(_CountingPool):
    """Passthrough pool that allocates a new buffer per row.

    Release performs no return step. Functionally interchangeable with
    BufferPool, with more allocation pressure.
    """

    def rent(self, min_size: int) -> list:
        self._check_size(min_size)
        self._count_rent()
        return [None] * min_size

    def release(self, buffer: list) -> None:
        self._count_release()

    def __repr__(self) -> str:
        return f'NullPool(rented={self.rented}, released={self.released})'


class BufferPool(_CountingPool):
    """Thread-safe pool of row buffers keyed by length.

    Buffers longer than max_buffer_length are allocated on demand and
    dropped on release. At most max_retained idle buffers are kept per
    length.
    """

    def __init__(self, max_retained: int = 64, max_buffer_length: int = MAX_BUFFER_LENGTH,
                 clear_on_release: bool = True) -> None:
        super().__init__()
        if max_retained < 0:
            raise ValueError(f'max_retained must be at least 0, got {max_retained}')
        self.max_retained = max_retained
        self.max_buffer_length = max_buffer_length
        self.clear_on_release = clear_on_release
        self._free: dict[int, list[list]] = defaultdict(list)
        self._leased: set[int] = set()
        self._lock = threading.Lock()

    def rent(self, min_size: int) -> list:
        """Rent a buffer of exactly min_size slots."""
        self._check_size(min_size)
        buffer = None
        if min_size <= self.max_buffer_length:
            with self._lock:
                free = self._free.get(min_size)
                if free:
                    buffer = free.pop()
                if buffer is None:
                    buffer = [None] * min_size
                self._leased.add(id(buffer))
        else:
            buffer = [None] * min_size
        self._count_rent()
        return buffer

    def release(self, buffer: list) -> None:
        """Return a rented buffer to the pool."""
        size = len(buffer)
        if size > self.max_buffer_length:
            self._count_release()
            return

        with self._lock:
            if id(buffer) not in self._leased:
                raise PoolError('Buffer was not rented from this pool or was already released')
            self._leased.discard(id(buffer))
            if self.clear_on_release:
                buffer[:] = [None] * size
            free = self._free[size]
            if len(free) < self.max_retained:
                free.append(buffer)
        self._count_release()

    @property
    def idle(self) -> int:
        """Number of buffers waiting to be rented again."""
        with self._lock:
            return sum(len(v) for v in self._free.values())

    def clear(self) -> None:
        """Drop all idle buffers."""
        with self._lock:
            self._free.clear()
        logger.debug('Cleared idle row buffers')

    def __repr__(self) -> str:
        return (f'BufferPool(rented={self.rented}, released={self.released}, '
                f'idle={self.idle})')


_shared_pool: BufferPool | None = None
_shared_pool_lock = threading.Lock()


def get_shared_pool() -> BufferPool:
    """Get the process-wide pool used when no pool is configured."""
    global _shared_pool
    if _shared_pool is None:
        with _shared_pool_lock:
            if _shared_pool is None:
                _shared_pool = BufferPool()
    return _shared_pool
