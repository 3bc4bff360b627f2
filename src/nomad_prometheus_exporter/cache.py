"""Thread-safe memo for node lookups within one collection cycle.

Many allocations usually share a handful of nodes. The memo lets the
fan-out workers of a single cycle issue one node request per node ID
instead of one per allocation. It is created fresh for every cycle and
never outlives it.
"""

from collections.abc import Callable
from threading import Lock
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class LookupFailedError(Exception):
    """Raised to each caller of a key whose fetch failed.

    The original error is kept as ``__cause__``.
    """


class _Entry(Generic[T]):
    __slots__ = ("error", "lock", "ready", "value")

    def __init__(self):
        self.lock = Lock()
        self.ready = False
        self.value: T | None = None
        self.error: BaseException | None = None


class NodeLookupCache(Generic[T]):
    """Per-key memo where concurrent callers for the same key wait for one fetch.

    The first caller for a key runs the fetch while holding that key's lock;
    later callers block on the lock and then reuse the stored value, or
    re-raise the stored error. Different keys never block each other.
    """

    def __init__(self, fetch_func: Callable[[str], T]):
        """Initialize the cache.

        Args:
            fetch_func: Function fetching the value for a key.
        """
        self._fetch_func = fetch_func
        self._lock = Lock()
        self._entries: dict[str, _Entry[T]] = {}

    def _entry(self, key: str) -> _Entry[T]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            return entry

    def get(self, key: str) -> T:
        """Return the value for ``key``, fetching it at most once.

        Args:
            key: Lookup key (a node ID).

        Returns:
            The fetched value.

        Raises:
            LookupFailedError: If the fetch for this key failed. Every
                caller gets a new instance chained from the stored error.
        """
        entry = self._entry(key)
        with entry.lock:
            if not entry.ready:
                try:
                    entry.value = self._fetch_func(key)
                except Exception as exc:
                    entry.error = exc
                entry.ready = True
            else:
                logger.debug("Using memoized lookup", key=key)

        if entry.error is not None:
            msg = f"lookup of {key} failed: {entry.error}"
            raise LookupFailedError(msg) from entry.error
        return entry.value  # type: ignore[return-value]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
