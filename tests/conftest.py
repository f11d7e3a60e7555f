from __future__ import annotations

import re
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from recallcache.models.core import ContentType, ContextItem, KnowledgeItem
from recallcache.services.hybrid_retriever import HybridRetriever
from recallcache.services.knowledge_store import SQLiteKnowledgeStore
from recallcache.services.semantic_cache import SQLiteSemanticCache
from recallcache.utils.bedrock_embed import EmbeddingUnavailableError
from recallcache.utils.bedrock_llm import GenerationFailedError
from recallcache.utils.config import CacheConfig, IngestionConfig, RetrievalConfig
from recallcache.utils.providers import EmbeddingProvider, GenerationProvider
from recallcache.utils.sqlite_client import SQLiteDatabase
from recallcache.utils.text_utils import normalize_query

START = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words embeddings with per-text overrides."""

    def __init__(self, dimension: int = 64):
        self.dimension = dimension
        self.overrides: Dict[str, List[float]] = {}
        self.fail = False
        self.calls: List[str] = []
        self._vocabulary: Dict[str, int] = {}
        self._lock = threading.Lock()

    def vector(self, *values: float) -> List[float]:
        return list(values) + [0.0] * (self.dimension - len(values))

    def override(self, text: str, *values: float) -> List[float]:
        vector = self.vector(*values)
        self.overrides[normalize_query(text)] = vector
        return vector

    def embed(self, text: str) -> List[float]:
        with self._lock:
            self.calls.append(text)
            if self.fail:
                raise EmbeddingUnavailableError('embedding service down')
            normalized = normalize_query(text)
            if normalized in self.overrides:
                return list(self.overrides[normalized])
            vector = [0.0] * self.dimension
            for token in re.findall(r"[a-z0-9']+", normalized):
                if token not in self._vocabulary:
                    self._vocabulary[token] = len(self._vocabulary) % self.dimension
                vector[self._vocabulary[token]] += 1.0
            return vector


class FakeGenerator(GenerationProvider):
    """Scripted generator recording every call."""

    def __init__(self, answer: str = 'Here is your answer.'):
        self.answer = answer
        self.error: Optional[Exception] = None
        self.before_return: Optional[Callable[[], None]] = None
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def generate(self, query: str, context: Sequence[ContextItem]) -> str:
        with self._lock:
            self.calls.append((query, list(context)))
        if self.before_return is not None:
            self.before_return()
        if self.error is not None:
            raise self.error
        return self.answer


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path: Path):
    """Temporary SQLite database."""
    database = SQLiteDatabase(db_path=tmp_path / 'recallcache-test.db')
    database.migrate()
    yield database
    database.close()


@pytest.fixture
def embedder() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def retrieval_config() -> RetrievalConfig:
    return RetrievalConfig(top_k=6,
                           candidate_pool=50,
                           exact_match_tier=3.0,
                           exact_match_confidence=0.95,
                           similarity_bands=[(0.40, 0.90), (0.30, 0.80), (0.25, 0.70)],
                           recent_window_hours=24,
                           week_window_days=7,
                           recent_fact_tier=2.5,
                           recent_other_tier=1.5,
                           week_tier=1.0,
                           older_tier=0.5,
                           no_context_confidence=0.5)


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(ttl_hours=24,
                       similarity_lookup=False,
                       similarity_threshold=0.95,
                       generation_timeout_seconds=5,
                       hit_workers=2)


@pytest.fixture
def ingestion_config() -> IngestionConfig:
    return IngestionConfig(queue_size=16,
                           dedup_window_days=7,
                           dedup_similarity=0.97,
                           extraction_mode='heuristic',
                           store_conversations=True,
                           max_excerpt_chars=200)


@pytest.fixture
def store(db: SQLiteDatabase, clock: FakeClock) -> SQLiteKnowledgeStore:
    return SQLiteKnowledgeStore(db, clock=clock)


@pytest.fixture
def cache(db: SQLiteDatabase, clock: FakeClock) -> SQLiteSemanticCache:
    return SQLiteSemanticCache(db, clock=clock)


@pytest.fixture
def retriever(store, embedder, retrieval_config) -> HybridRetriever:
    return HybridRetriever(store, embedder, retrieval_config)


@pytest.fixture
def make_item(clock: FakeClock, embedder: FakeEmbeddingProvider) -> Callable[..., KnowledgeItem]:
    """Build a knowledge item; embedded with the fake provider unless ``embedding`` is given."""

    def _make(user_id: str,
              content: str,
              content_type: ContentType = ContentType.USER_FACT,
              age: timedelta = timedelta(0),
              embedding='auto',
              metadata: Optional[dict] = None) -> KnowledgeItem:
        if embedding == 'auto':
            embedding = embedder.embed(content)
        return KnowledgeItem(id=str(uuid.uuid4()),
                             user_id=user_id,
                             content=content,
                             content_type=content_type,
                             created_at=clock() - age,
                             embedding=embedding,
                             metadata=metadata or {})

    return _make


@pytest.fixture
def failing_generator() -> FakeGenerator:
    generator = FakeGenerator()
    generator.error = GenerationFailedError('model unavailable')
    return generator
