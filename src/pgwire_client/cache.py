"""
Statement cache.

Maps a structural ``QueryKey`` to a ``CachedQuery`` so that callers executing
the same text share one parsed query and, once it has been executed often
enough, one server-side prepared statement.

Entries are borrowed and released. A borrowed entry is never evicted; idle
entries are evicted least-recently-used first when the cache exceeds its entry
or size bound. Entries hold a ``Query`` handle, which addresses the engine's
query record by integer id.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from .exceptions import CallerContractError
from .query import Query

logger = structlog.get_logger()

# Per-entry bookkeeping overhead added to the text size estimate
ENTRY_OVERHEAD_BYTES = 64


@dataclass(frozen=True)
class QueryKey:
    """Structural cache key; equal keys resolve to the same entry."""

    sql: str
    escape_processing: bool = True
    is_parameterized: bool = True
    column_names: Optional[Tuple[str, ...]] = None
    is_callable: bool = False

    @classmethod
    def create(cls, sql: str, escape_processing: bool = True, is_parameterized: bool = True,
               column_names: Optional[Sequence[str]] = None, is_callable: bool = False) -> 'QueryKey':
        names = tuple(column_names) if column_names else None
        return cls(sql, escape_processing, is_parameterized, names, is_callable)

    @property
    def size(self) -> int:
        size = len(self.sql) * 2 + ENTRY_OVERHEAD_BYTES
        if self.column_names:
            size += sum(len(name) * 2 for name in self.column_names)
        return size


class CachedQuery:
    """
    Cache entry: a Query handle plus usage metadata.

    Attributes:
        key: the structural key
        query: the engine-specific query handle
        use_count: outstanding borrows
    """

    def __init__(self, key: QueryKey, query: Query):
        self.key = key
        self.query = query
        self.use_count = 0
        self._execute_count = 0

    @property
    def query_id(self) -> int:
        return self.query.query_id

    @property
    def execute_count(self) -> int:
        return self._execute_count

    def increase_execute_count(self, increment: int = 1) -> int:
        if increment > 0:
            self._execute_count += increment
        return self._execute_count

    def reset_execute_count(self):
        self._execute_count = 0

    @property
    def size(self) -> int:
        return self.key.size

    def __repr__(self) -> str:
        return (f"CachedQuery(query_id={self.query_id}, sql={self.key.sql[:60]!r}, "
                f"use_count={self.use_count}, execute_count={self._execute_count})")


class StatementCache:
    """
    LRU cache of CachedQuery entries.

    Args:
        create: builds a new entry for a key (the engine parses the text here)
        max_queries: maximum number of entries kept
        max_size_bytes: maximum estimated size of all keys
        on_evict: called with each evicted entry so the server statement can be closed
    """

    def __init__(self, create: Callable[[QueryKey], CachedQuery], max_queries: int = 256,
                 max_size_bytes: int = 5 * 1024 * 1024,
                 on_evict: Optional[Callable[[CachedQuery], None]] = None):
        self._create = create
        self.max_queries = max_queries
        self.max_size_bytes = max_size_bytes
        self._on_evict = on_evict
        self._entries: 'OrderedDict[QueryKey, CachedQuery]' = OrderedDict()
        self._by_query_id: Dict[int, CachedQuery] = {}
        self._size = 0
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: QueryKey) -> bool:
        return key in self._entries

    @property
    def size_bytes(self) -> int:
        return self._size

    def get(self, key: QueryKey) -> Optional[CachedQuery]:
        return self._entries.get(key)

    def entry_for_query(self, query_id: int) -> Optional[CachedQuery]:
        return self._by_query_id.get(query_id)

    def borrow(self, key: QueryKey) -> CachedQuery:
        """
        Return the entry for ``key``, creating it if absent, and mark it in use.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._create(key)
                self._entries[key] = entry
                self._by_query_id[entry.query_id] = entry
                self._size += entry.size
                logger.debug("Statement cache miss", query_id=entry.query_id, entries=len(self._entries))
            else:
                self._entries.move_to_end(key)
            entry.use_count += 1
            self._evict_idle()
            return entry

    def release(self, entry: CachedQuery):
        """
        Return a borrowed entry.

        Raises:
            CallerContractError: the entry has no outstanding borrow
        """
        with self._lock:
            if entry.use_count <= 0:
                raise CallerContractError(
                    f"Query {entry.query_id} released more times than it was borrowed.")
            entry.use_count -= 1
            if entry.key in self._entries:
                self._entries.move_to_end(entry.key)
            self._evict_idle()

    def _evict_idle(self):
        if len(self._entries) <= self.max_queries and self._size <= self.max_size_bytes:
            return
        evicted: List[CachedQuery] = []
        for key, entry in list(self._entries.items()):
            if len(self._entries) <= self.max_queries and self._size <= self.max_size_bytes:
                break
            if entry.use_count > 0:
                continue
            del self._entries[key]
            self._by_query_id.pop(entry.query_id, None)
            self._size -= entry.size
            evicted.append(entry)
        for entry in evicted:
            logger.debug("Statement cache eviction", query_id=entry.query_id)
            if self._on_evict is not None:
                self._on_evict(entry)

    def reset_execute_counts(self):
        """Forget promotion progress, e.g. after the server dropped all prepared statements."""
        with self._lock:
            for entry in self._entries.values():
                entry.reset_execute_count()

    def entries(self) -> List[CachedQuery]:
        with self._lock:
            return list(self._entries.values())

    def clear(self):
        with self._lock:
            evicted = [e for e in self._entries.values() if e.use_count == 0]
            for entry in evicted:
                del self._entries[entry.key]
                self._by_query_id.pop(entry.query_id, None)
                self._size -= entry.size
        for entry in evicted:
            if self._on_evict is not None:
                self._on_evict(entry)
