from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from recallcache.models.core import CachedResponse
from recallcache.services.semantic_cache import OpenSearchSemanticCache, SQLiteSemanticCache, cache_entry_id
from recallcache.utils.errors import CacheWriteConflictError, UserScopeViolationError
from recallcache.utils.text_utils import normalize_query, query_hash
from recallcache.utils.timestamp_utils import to_iso

QUERY = normalize_query('What is my favorite color?')


def _response(answer: str = 'Your favorite color is blue.') -> CachedResponse:
    return CachedResponse(answer=answer,
                          sources=['user_fact'],
                          confidence=0.9,
                          context=[{'content': 'My favorite color is blue', 'score': 0.9}])


def test_lookup_miss(cache) -> None:
    assert cache.lookup('u1', QUERY) is None


def test_upsert_then_lookup(cache, clock) -> None:
    entry_id = cache.upsert('u1', QUERY, None, _response())

    entry = cache.lookup('u1', normalize_query('  what is my FAVORITE color '))

    assert entry is not None
    assert entry.id == entry_id
    assert entry.query_hash == query_hash(QUERY)
    assert entry.cached_response == _response()
    assert entry.hit_count == 0
    assert entry.expires_at == clock() + timedelta(hours=24)


def test_lookup_is_scoped_to_user(cache) -> None:
    cache.upsert('u1', QUERY, None, _response())
    assert cache.lookup('u2', QUERY) is None


def test_lookup_requires_user_id(cache) -> None:
    with pytest.raises(UserScopeViolationError):
        cache.lookup('', QUERY)


def test_zero_ttl_entry_is_absent(cache) -> None:
    cache.upsert('u1', QUERY, None, _response(), ttl=timedelta(0))
    assert cache.lookup('u1', QUERY) is None


def test_entry_expires_after_ttl(cache, clock) -> None:
    cache.upsert('u1', QUERY, None, _response(), ttl=timedelta(hours=1))

    clock.advance(minutes=59)
    assert cache.lookup('u1', QUERY) is not None
    clock.advance(minutes=1)
    assert cache.lookup('u1', QUERY) is None


def test_record_hit_increments(cache, clock) -> None:
    entry_id = cache.upsert('u1', QUERY, None, _response())

    clock.advance(minutes=5)
    assert cache.record_hit(entry_id) is True
    assert cache.record_hit(entry_id) is True

    entry = cache.lookup('u1', QUERY)
    assert entry.hit_count == 2
    assert entry.last_hit == clock()
    assert cache.record_hit('missing') is False


def test_upsert_replaces_answer_and_keeps_hits(cache, db, clock) -> None:
    entry_id = cache.upsert('u1', QUERY, [1.0, 0.0], _response('blue'))
    cache.record_hit(entry_id)

    clock.advance(hours=2)
    assert cache.upsert('u1', QUERY, None, _response('green')) == entry_id

    entry = cache.lookup('u1', QUERY)
    assert entry.cached_response.answer == 'green'
    assert entry.hit_count == 1
    assert entry.query_embedding == [1.0, 0.0]
    assert entry.expires_at == clock() + timedelta(hours=24)
    assert db.fetchone('SELECT COUNT(*) FROM cache_entries')[0] == 1


def test_concurrent_upserts_converge(cache, db) -> None:
    errors = []
    barrier = threading.Barrier(8)

    def write(i: int) -> None:
        try:
            barrier.wait()
            cache.upsert('u1', QUERY, None, _response(f'answer {i}'))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=write, args=(i, )) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert db.fetchone('SELECT COUNT(*) FROM cache_entries WHERE user_id = ?', ('u1', ))[0] == 1
    assert cache.lookup('u1', QUERY).cached_response.answer.startswith('answer ')


def test_find_similar(cache, clock) -> None:
    cache.upsert('u1', QUERY, [1.0, 0.0, 0.0], _response())
    cache.upsert('u1', normalize_query('where do i live'), [0.0, 1.0, 0.0], _response('Lisbon'))

    match = cache.find_similar('u1', [0.99, 0.05, 0.0], threshold=0.95)
    assert match is not None
    assert match.cached_response.answer == 'Your favorite color is blue.'

    assert cache.find_similar('u1', [0.7, 0.7, 0.0], threshold=0.95) is None
    assert cache.find_similar('u2', [1.0, 0.0, 0.0]) is None
    assert cache.find_similar('u1', None) is None

    clock.advance(hours=25)
    assert cache.find_similar('u1', [1.0, 0.0, 0.0]) is None


def test_find_similar_skips_malformed_vectors(cache, db) -> None:
    cache.upsert('u1', QUERY, [1.0, 0.0], _response())
    db.execute("UPDATE cache_entries SET query_embedding = '[1.0]'")

    assert cache.find_similar('u1', [1.0, 0.0]) is None


def test_purge_clear_and_stats(cache, clock) -> None:
    first = cache.upsert('u1', QUERY, None, _response(), ttl=timedelta(hours=1))
    cache.upsert('u1', 'where do i live', None, _response(), ttl=timedelta(hours=48))
    cache.upsert('u2', QUERY, None, _response())
    cache.record_hit(first)
    cache.record_hit(first)

    assert cache.stats() == {'entries': 3, 'total_hits': 2, 'average_hits': pytest.approx(2 / 3)}
    assert cache.stats('u2') == {'entries': 1, 'total_hits': 0, 'average_hits': 0.0}

    clock.advance(hours=30)
    assert cache.purge_expired() == 2
    assert cache.stats() == {'entries': 1, 'total_hits': 0, 'average_hits': 0.0}

    assert cache.clear_user('u1') == 1
    assert cache.stats() == {'entries': 0, 'total_hits': 0, 'average_hits': 0.0}


class FlakyCache(SQLiteSemanticCache):

    def __init__(self, *args, conflicts: int, **kwargs):
        super().__init__(*args, **kwargs)
        self.conflicts = conflicts
        self.attempts = 0

    def _upsert(self, *args):
        self.attempts += 1
        if self.attempts <= self.conflicts:
            raise CacheWriteConflictError('version conflict')
        super()._upsert(*args)


def test_write_conflicts_are_retried(db, clock) -> None:
    cache = FlakyCache(db, clock=clock, conflicts=2)
    assert cache.upsert('u1', QUERY, None, _response()) is not None
    assert cache.attempts == 3


def test_write_conflicts_are_absorbed(db, clock) -> None:
    cache = FlakyCache(db, clock=clock, conflicts=100, conflict_retries=3)
    assert cache.upsert('u1', QUERY, None, _response()) is None
    assert cache.attempts == 4
    assert cache.lookup('u1', QUERY) is None


def test_opensearch_upsert_uses_deterministic_id(clock) -> None:
    client = MagicMock()
    cache = OpenSearchSemanticCache(client, clock=clock)

    entry_id = cache.upsert('u1', QUERY, [0.5, 0.5], _response())

    assert entry_id == cache_entry_id('u1', query_hash(QUERY))
    args, kwargs = client.upsert_document.call_args
    assert args[0] == entry_id
    assert kwargs['doc']['query_embedding'] == [0.5, 0.5]
    assert kwargs['upsert']['user_id'] == 'u1'
    assert kwargs['upsert']['hit_count'] == 0
    assert kwargs['upsert']['expires_at'] == to_iso(clock() + timedelta(hours=24))


def test_opensearch_lookup_fails_closed(clock) -> None:
    client = MagicMock()
    client.get_document.return_value = {'id': 'x', 'user_id': 'mallory', 'query_hash': query_hash(QUERY)}
    cache = OpenSearchSemanticCache(client, clock=clock)

    with pytest.raises(UserScopeViolationError):
        cache.lookup('u1', QUERY)


def test_opensearch_lookup_and_record_hit(clock) -> None:
    client = MagicMock()
    client.get_document.return_value = {
        'id': 'entry-1',
        'user_id': 'u1',
        'query_hash': query_hash(QUERY),
        'cached_response': _response().to_dict(),
        'hit_count': 4,
        'created_at': to_iso(clock()),
        'expires_at': to_iso(clock() + timedelta(hours=1))
    }
    client.update_with_script.return_value = True
    cache = OpenSearchSemanticCache(client, clock=clock)

    entry = cache.lookup('u1', QUERY)
    assert entry.hit_count == 4
    assert cache.record_hit(entry.id) is True
    assert client.update_with_script.call_args.args[2] == {'now': to_iso(clock())}

    clock.advance(hours=1)
    assert cache.lookup('u1', QUERY) is None
