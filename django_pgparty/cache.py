"""In-process cache for partition lists and per-partition query prototypes.

Two namespaces share one lock: partition lists keyed by ``(key,
include_subpartitions)`` and per-child values keyed by ``(key, child_table)``.
The compute callable runs while the lock is held, so concurrent misses for the
same entry never compute twice. Entries are checked for staleness on every
read and replaced lazily.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable

    from django_pgparty.conf import PartitioningConfig


@dataclass(slots=True)
class _Entry:
    value: Any
    created: float


@dataclass(slots=True)
class _Slot:
    models: dict[str, _Entry] = field(default_factory=dict)
    partitions: dict[bool, _Entry] = field(default_factory=dict)


class MetadataCache:
    """Thread-safe TTL cache for partition metadata.

    Args:
        enabled: When False every fetch calls ``compute`` and stores nothing.
        ttl: Seconds an entry stays fresh. ``<= 0`` keeps entries until
            :meth:`clear`. Applies regardless of ``enabled``.
        clock: Monotonic time source, replaceable in tests.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        ttl: float = -1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.enabled = enabled
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._store: dict[Hashable, _Slot] = {}

    @classmethod
    def from_config(cls, config: PartitioningConfig) -> MetadataCache:
        return cls(enabled=config.caching, ttl=config.caching_ttl)

    def fetch_partitions(
        self,
        key: Hashable,
        include_subpartitions: bool,
        compute: Callable[[], Any],
    ) -> Any:
        """Return the partition list for ``key``, computing it on a miss.

        The two ``include_subpartitions`` variants are cached independently.
        """
        with self._lock:
            slot = self._store.setdefault(key, _Slot())
            return self._fetch(slot.partitions, bool(include_subpartitions), compute)

    def fetch_model(self, key: Hashable, child_table: str, compute: Callable[[], Any]) -> Any:
        """Return the memoized value for ``(key, child_table)``, computing it on a miss."""
        with self._lock:
            slot = self._store.setdefault(key, _Slot())
            return self._fetch(slot.models, str(child_table), compute)

    def clear(self) -> None:
        """Drop every entry. Called after each DDL statement that changes partitions."""
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(slot.models) + len(slot.partitions) for slot in self._store.values())

    def _expired(self, entry: _Entry) -> bool:
        return self.ttl > 0 and self._clock() - entry.created > self.ttl

    def _fetch(self, entries: dict[Any, _Entry], subkey: Any, compute: Callable[[], Any]) -> Any:
        if not self.enabled:
            return compute()

        entry = entries.get(subkey)
        if entry is None or self._expired(entry):
            entry = _Entry(compute(), self._clock())
            entries[subkey] = entry
        return entry.value


_default_cache: MetadataCache | None = None
_default_cache_lock = threading.Lock()


def get_default_cache() -> MetadataCache:
    """Return the process-wide cache, created from Django settings on first use."""
    global _default_cache  # noqa: PLW0603
    with _default_cache_lock:
        if _default_cache is None:
            from django_pgparty.conf import get_config

            _default_cache = MetadataCache.from_config(get_config())
        return _default_cache


def reset_default_cache() -> None:
    """Forget the process-wide cache so the next call re-reads settings."""
    global _default_cache  # noqa: PLW0603
    with _default_cache_lock:
        _default_cache = None
