from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from recallcache.models.core import ContentType, MatchType
from recallcache.services.knowledge_store import OpenSearchKnowledgeStore, item_to_document
from recallcache.utils.errors import UserScopeViolationError
from recallcache.utils.timestamp_utils import to_iso


def test_db_migrate(db) -> None:
    """Verify database tables are created."""
    conn = db.connect()
    tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name").fetchall()
    names = [row[0] for row in tables]
    assert 'knowledge_items' in names
    assert 'cache_entries' in names


def test_insert_requires_user_id(store, make_item) -> None:
    with pytest.raises(UserScopeViolationError):
        store.insert(make_item('', 'My name is Sam'))
    with pytest.raises(UserScopeViolationError):
        store.insert(make_item('   ', 'My name is Sam'))


def test_insert_requires_content(store, make_item) -> None:
    with pytest.raises(ValueError):
        store.insert(make_item('u1', '   ', embedding=None))


def test_search_requires_user_id(store) -> None:
    with pytest.raises(UserScopeViolationError):
        store.search_by_user('', 'anything', None, limit=10)


def test_search_is_scoped_to_user(store, make_item, embedder) -> None:
    store.insert(make_item('alice', 'My favorite color is blue'))
    store.insert(make_item('bob', 'My favorite color is red'))

    scored = store.search_by_user('alice', 'favorite color', embedder.embed('favorite color'), limit=10)

    assert [s.item.content for s in scored] == ['My favorite color is blue']
    assert all(s.item.user_id == 'alice' for s in scored)
    assert store.search_by_user('carol', 'favorite color', embedder.embed('favorite color'), limit=10) == []


def test_item_without_embedding_matches_exactly(store, make_item, embedder) -> None:
    store.insert(make_item('u1', 'I live in Lisbon', embedding=None))

    exact = store.search_by_user('u1', 'live in lisbon', embedder.embed('live in lisbon'), limit=10)
    other = store.search_by_user('u1', 'where do i live', embedder.embed('where do i live'), limit=10)

    assert [s.match_type for s in exact] == [MatchType.EXACT]
    assert other == []


def test_malformed_vectors_are_skipped(store, db, make_item, embedder, clock) -> None:
    good = make_item('u1', 'I live in Lisbon')
    store.insert(good)
    for item_id, raw in (('bad-json', '{not json'), ('bad-values', '[1.0, "x"]'), ('bad-length', '[1.0]')):
        db.execute(
            'INSERT INTO knowledge_items (id, user_id, content, content_type, embedding, created_at) VALUES (?, ?, ?, ?, ?, ?)',
            (item_id, 'u1', 'I live near the sea', ContentType.USER_FACT.value, raw, to_iso(clock())))

    scored = store.search_by_user('u1', 'where do i live', embedder.embed('where do i live'), limit=10)

    assert [s.item.id for s in scored] == [good.id]


def test_malformed_vector_still_matches_exactly(store, db, embedder, clock) -> None:
    db.execute(
        'INSERT INTO knowledge_items (id, user_id, content, content_type, embedding, created_at) VALUES (?, ?, ?, ?, ?, ?)',
        ('bad', 'u1', 'My shoe size is 42', ContentType.USER_FACT.value, 'oops', to_iso(clock())))

    scored = store.search_by_user('u1', 'shoe size', embedder.embed('shoe size'), limit=10)

    assert [(s.item.id, s.match_type) for s in scored] == [('bad', MatchType.EXACT)]


def test_recent_items_filters_and_orders(store, make_item, clock) -> None:
    store.insert(make_item('u1', 'Old fact', age=timedelta(days=10)))
    store.insert(make_item('u1', 'Newer fact', age=timedelta(days=1)))
    store.insert(make_item('u1', 'Newest fact', age=timedelta(hours=1)))
    store.insert(make_item('u1', 'User: hi\nAssistant: hello', content_type=ContentType.CONVERSATION))
    store.insert(make_item('u2', 'Other user fact'))

    recent = store.recent_items('u1', content_type=ContentType.USER_FACT, since=clock() - timedelta(days=7))

    assert [item.content for item in recent] == ['Newest fact', 'Newer fact']
    assert len(store.recent_items('u1')) == 4


def test_round_trip_preserves_fields(store, make_item) -> None:
    item = make_item('u1', 'I work as a developer', metadata={'source': 'profile'})
    store.insert(item)

    [stored] = store.recent_items('u1')

    assert stored == item
    assert stored.source == 'profile'


def test_count_iterate_and_delete(store, make_item) -> None:
    for i in range(5):
        store.insert(make_item('u1', f'Fact number {i}', age=timedelta(minutes=i)))
    store.insert(make_item('u2', 'Someone else'))

    assert store.count('u1') == 5
    assert [item.content for item in store.iter_by_user('u1', batch_size=2)] == [f'Fact number {i}' for i in range(5)]

    assert store.delete_user_data('u1') == 5
    assert store.count('u1') == 0
    assert store.count('u2') == 1


def test_health_check(store) -> None:
    assert store.health_check() is True


def _hit(item) -> dict:
    return {'id': item.id, 'score': 1.0, 'sort': None, 'document': item_to_document(item)}


def test_opensearch_store_scores_candidates(make_item, embedder) -> None:
    client = MagicMock()
    blue = make_item('alice', 'My favorite color is blue', age=timedelta(days=3))
    client.keyword_search.return_value = [_hit(blue)]
    client.vector_search.return_value = [_hit(blue)]
    store = OpenSearchKnowledgeStore(client)

    scored = store.search_by_user('alice', 'favorite color', embedder.embed('favorite color'), limit=20)

    assert len(scored) == 1
    assert scored[0].match_type == MatchType.EXACT
    client.vector_search.assert_called_once()
    assert client.vector_search.call_args.args[1] == 'alice'


def test_opensearch_store_fails_closed_on_foreign_item(make_item) -> None:
    client = MagicMock()
    client.keyword_search.return_value = [_hit(make_item('mallory', 'My favorite color is black'))]
    store = OpenSearchKnowledgeStore(client)

    with pytest.raises(UserScopeViolationError):
        store.search_by_user('alice', 'favorite color', None, limit=20)


def test_opensearch_store_insert_indexes_document(make_item) -> None:
    client = MagicMock()
    client.index_document.return_value = True
    store = OpenSearchKnowledgeStore(client)
    item = make_item('alice', 'I live in Lisbon', embedding=None)

    store.insert(item)

    document = client.index_document.call_args.args[0]
    assert document['user_id'] == 'alice'
    assert 'embedding' not in document
    assert client.index_document.call_args.kwargs['doc_id'] == item.id
