"""
Unit Tests: Statement Cache

Coverage:
- Equal keys resolve to the same entry
- Borrow/release accounting and over-release
- LRU eviction of idle entries only, by count and by size
- Execute count bookkeeping
"""

import itertools

import pytest

from pgwire_client.cache import CachedQuery, QueryKey, StatementCache
from pgwire_client.exceptions import CallerContractError
from pgwire_client.query import Query, parse_sql


class EntryFactory:
    """Builds entries the way the engine does, recording each creation."""

    def __init__(self):
        self.ids = itertools.count(1)
        self.created = []
        self.evicted = []

    def __call__(self, key: QueryKey) -> CachedQuery:
        query = Query(next(self.ids), tuple(parse_sql(key.sql, key.is_parameterized)), object())
        entry = CachedQuery(key, query)
        self.created.append(entry)
        return entry


@pytest.fixture
def factory():
    return EntryFactory()


def make_cache(factory: EntryFactory, **bounds) -> StatementCache:
    return StatementCache(factory, on_evict=factory.evicted.append, **bounds)


@pytest.mark.unit
class TestQueryKey:

    def test_structural_equality(self):
        assert QueryKey.create("SELECT 1") == QueryKey.create("SELECT 1")
        assert QueryKey.create("SELECT 1") != QueryKey.create("SELECT 1", is_parameterized=False)
        assert QueryKey.create("INSERT", column_names=['id']) == QueryKey.create("INSERT", column_names=('id',))

    def test_size_estimate_grows_with_text(self):
        assert QueryKey.create("SELECT 1000").size > QueryKey.create("SELECT 1").size


@pytest.mark.unit
class TestStatementCache:

    def test_same_entry_for_equal_keys(self, factory):
        """GIVEN one key borrowed twice THEN both borrows share an entry"""
        cache = make_cache(factory)
        first = cache.borrow(QueryKey.create("SELECT ?"))
        second = cache.borrow(QueryKey.create("SELECT ?"))
        assert first is second
        assert first.use_count == 2
        assert len(factory.created) == 1
        assert cache.entry_for_query(first.query_id) is first

    def test_release_balances_borrow(self, factory):
        cache = make_cache(factory)
        entry = cache.borrow(QueryKey.create("SELECT 1"))
        cache.release(entry)
        assert entry.use_count == 0
        with pytest.raises(CallerContractError, match="released more times"):
            cache.release(entry)

    def test_borrowed_entries_are_never_evicted(self, factory):
        cache = make_cache(factory, max_queries=1)
        first = cache.borrow(QueryKey.create("SELECT 1"))
        second = cache.borrow(QueryKey.create("SELECT 2"))
        assert len(cache) == 2
        assert factory.evicted == []

        cache.release(second)
        assert factory.evicted == [second]
        assert QueryKey.create("SELECT 1") in cache
        assert cache.entry_for_query(second.query_id) is None
        assert first.use_count == 1

    def test_least_recently_used_goes_first(self, factory):
        cache = make_cache(factory, max_queries=2)
        a = cache.borrow(QueryKey.create("SELECT 'a'"))
        b = cache.borrow(QueryKey.create("SELECT 'b'"))
        cache.release(a)
        cache.release(b)
        cache.release(cache.borrow(QueryKey.create("SELECT 'a'")))
        cache.release(cache.borrow(QueryKey.create("SELECT 'c'")))
        assert factory.evicted == [b]
        assert QueryKey.create("SELECT 'a'") in cache

    def test_size_bound(self, factory):
        key = QueryKey.create("SELECT 1")
        cache = make_cache(factory, max_size_bytes=key.size)
        cache.release(cache.borrow(key))
        cache.release(cache.borrow(QueryKey.create("SELECT 2")))
        assert len(cache) == 1
        assert cache.size_bytes <= key.size
        assert [entry.key for entry in factory.evicted] == [key]

    def test_reset_execute_counts(self, factory):
        cache = make_cache(factory)
        entry = cache.borrow(QueryKey.create("SELECT ?"))
        assert entry.increase_execute_count() == 1
        assert entry.increase_execute_count(2) == 3
        cache.reset_execute_counts()
        assert entry.execute_count == 0

    def test_clear_keeps_borrowed(self, factory):
        cache = make_cache(factory)
        held = cache.borrow(QueryKey.create("SELECT 1"))
        idle = cache.borrow(QueryKey.create("SELECT 2"))
        cache.release(idle)
        cache.clear()
        assert cache.entries() == [held]
        assert factory.evicted == [idle]
