from __future__ import annotations

from datetime import timedelta

import pytest

from recallcache.models.core import ContentType, MatchType
from recallcache.utils.errors import UserScopeViolationError


def test_favorite_color_from_a_week_ago(retriever, store, make_item, clock) -> None:
    store.insert(make_item('u1', 'My favorite color is blue'))
    store.insert(make_item('u1', 'I work as a developer'))
    clock.advance(days=7)

    result = retriever.retrieve('u1', 'What is my favorite color?')

    assert result.context[0].item.content == 'My favorite color is blue'
    assert result.context[0].confidence >= 0.70
    assert result.confidence == result.context[0].confidence
    assert result.degraded is False


def test_recent_correction_outranks_older_fact(retriever, store, make_item, clock) -> None:
    store.insert(make_item('u1', 'My favorite color is blue', age=timedelta(days=3)))
    store.insert(make_item('u1', 'Actually, my favorite color is green now', age=timedelta(hours=1)))

    result = retriever.retrieve('u1', 'What is my favorite color?')

    assert [scored.item.content for scored in result.context][:2] == [
        'Actually, my favorite color is green now', 'My favorite color is blue'
    ]


def test_job_change_ranks_newest_first(retriever, store, make_item, embedder, clock) -> None:
    # Identical vectors: only recency can separate the two statements
    same = embedder.vector(0.6, 0.8)
    embedder.override('what is my job?', 0.6, 0.8)
    store.insert(make_item('u1', 'I work as a developer', embedding=same))
    clock.advance(days=20)
    store.insert(make_item('u1', 'I am now a product manager', embedding=same))
    clock.advance(hours=2)

    result = retriever.retrieve('u1', 'what is my job?')

    assert [scored.item.content for scored in result.context] == ['I am now a product manager', 'I work as a developer']
    assert result.context[0].similarity == pytest.approx(result.context[1].similarity)


def test_job_change_with_equal_tiers_falls_back_to_created_at(retriever, store, make_item, embedder, clock) -> None:
    same = embedder.vector(0.6, 0.8)
    embedder.override('what is my job?', 0.6, 0.8)
    store.insert(make_item('u1', 'I work as a developer', embedding=same))
    clock.advance(days=1)
    store.insert(make_item('u1', 'I am now a product manager', embedding=same))
    clock.advance(days=30)

    result = retriever.retrieve('u1', 'what is my job?')

    assert {scored.priority_tier for scored in result.context} == {0.5}
    assert result.context[0].item.content == 'I am now a product manager'


def test_similarity_threshold_excludes_weak_matches(retriever, store, make_item, embedder) -> None:
    embedder.override('tell me about myself', 1.0, 0.0)
    store.insert(make_item('u1', 'I like hiking', embedding=embedder.vector(0.2, 0.98)))
    store.insert(make_item('u1', 'I live in Porto', embedding=embedder.vector(0.27, 0.96)))

    result = retriever.retrieve('u1', 'tell me about myself')

    assert [scored.item.content for scored in result.context] == ['I live in Porto']
    assert result.context[0].confidence == 0.70


def test_exact_match_outranks_recent_vector_match(retriever, store, make_item) -> None:
    store.insert(make_item('u1', 'My shoe size is 42', age=timedelta(days=90)))
    store.insert(make_item('u1', 'My size in shirts is M', age=timedelta(hours=1)))

    result = retriever.retrieve('u1', 'shoe size')

    assert result.context[0].item.content == 'My shoe size is 42'
    assert result.context[0].match_type == MatchType.EXACT
    assert result.context[0].confidence == 0.95


def test_degraded_mode_keeps_exact_matches_only(retriever, store, make_item, embedder) -> None:
    store.insert(make_item('u1', 'My favorite color is blue'))
    store.insert(make_item('u1', 'I adore the colour navy'))
    embedder.fail = True

    result = retriever.retrieve('u1', 'favorite color')

    assert result.degraded is True
    assert result.query_embedding is None
    assert [scored.item.content for scored in result.context] == ['My favorite color is blue']


@pytest.mark.parametrize('content, query', [
    ('My favourite café is CAFÉ NERO', 'café nero'),
    ('I live in  Berlin', 'i live in berlin'),
    ('Ｍｙ size is ＸＬ', 'my size is xl'),
])
def test_degraded_exact_match_uses_normalized_content(retriever, store, make_item, embedder, content, query) -> None:
    store.insert(make_item('u1', content, embedding=None))
    embedder.fail = True

    result = retriever.retrieve('u1', query)

    assert [scored.item.content for scored in result.context] == [content]
    assert result.confidence == 0.95


def test_no_relevant_memory_is_empty_not_error(retriever, store, make_item) -> None:
    store.insert(make_item('u1', 'I live in Lisbon'))

    result = retriever.retrieve('u1', 'quantum chromodynamics')

    assert result.context == []
    assert result.confidence == 0.0


def test_empty_query_skips_embedding(retriever, embedder) -> None:
    result = retriever.retrieve('u1', '  ?? ')

    assert result.context == []
    assert embedder.calls == []


def test_results_are_capped_at_top_k(retriever, store, make_item) -> None:
    for i in range(10):
        store.insert(make_item('u1', f'Order {i}: running shoes', content_type=ContentType.CONVERSATION,
                               age=timedelta(minutes=i)))

    assert len(retriever.retrieve('u1', 'running shoes').context) == 6
    assert len(retriever.retrieve('u1', 'running shoes', top_k=3).context) == 3


def test_other_users_items_never_returned(retriever, store, make_item) -> None:
    store.insert(make_item('alice', 'My favorite color is blue'))
    store.insert(make_item('bob', 'My favorite color is red'))

    result = retriever.retrieve('bob', 'favorite color')

    assert [scored.item.user_id for scored in result.context] == ['bob']
    assert result.sources == ['user_fact']


def test_retrieve_requires_user_id(retriever) -> None:
    with pytest.raises(UserScopeViolationError):
        retriever.retrieve(None, 'favorite color')
