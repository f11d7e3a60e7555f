"""
Per-user response cache keyed by (user_id, normalized query hash).
"""

import hashlib
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional, Sequence

from ..models.core import CachedResponse, CacheEntry
from ..utils.config import AppConfig
from ..utils.errors import CacheWriteConflictError, MalformedStoredVectorError, UserScopeViolationError, require_user_id
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import CACHE_INDEX, OpenSearchClient, OpenSearchError
from ..utils.sqlite_client import SQLiteDatabase, get_database
from ..utils.text_utils import cosine_similarity, query_hash
from ..utils.timestamp_utils import parse_iso, to_iso, utc_now

logger = get_logger(__name__)

DEFAULT_TTL = timedelta(hours=24)


def cache_entry_id(user_id: str, hashed_query: str) -> str:
    """Deterministic entry id, so concurrent writers of one key target one record."""
    return hashlib.sha256(f'{user_id}\x00{hashed_query}'.encode('utf-8')).hexdigest()


class SemanticCache(ABC):
    """Cache of generated answers scoped to one user per entry.

    Expiry is lazy: an expired entry is reported as absent and stays on disk until
    ``purge_expired`` runs.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now, conflict_retries: int = 3):
        self.clock = clock
        self.conflict_retries = conflict_retries

    def lookup(self, user_id: str, normalized_query: str) -> Optional[CacheEntry]:
        """
        Fetch the live entry for a query.

        Args:
            user_id: Requesting user
            normalized_query: Query already passed through normalize_query

        Returns:
            The entry, or None when missing or expired
        """
        require_user_id(user_id)
        hashed = query_hash(normalized_query)
        entry = self._get(user_id, hashed)
        if entry is None:
            return None
        if entry.user_id != user_id:
            raise UserScopeViolationError(f'Cache entry {entry.id} does not belong to user {user_id}')
        if entry.is_expired(self.clock()):
            logger.debug(f'Cache entry {entry.id} expired at {to_iso(entry.expires_at)}')
            return None
        return entry

    def record_hit(self, entry_id: str) -> bool:
        """Atomically increment hit_count and set last_hit; False if the entry is gone."""
        return self._record_hit(entry_id, self.clock())

    def upsert(self,
               user_id: str,
               normalized_query: str,
               query_embedding: Optional[Sequence[float]],
               response: CachedResponse,
               ttl: timedelta = DEFAULT_TTL) -> Optional[str]:
        """
        Insert an entry, or replace the answer and expiry of the existing one.

        Concurrent writers of the same key converge on a single entry. Write
        conflicts are retried and finally absorbed.

        Returns:
            Entry id, or None if the write was abandoned after conflicts
        """
        require_user_id(user_id)
        hashed = query_hash(normalized_query)
        entry_id = cache_entry_id(user_id, hashed)
        embedding = list(query_embedding) if query_embedding else None

        for attempt in range(self.conflict_retries + 1):
            now = self.clock()
            try:
                self._upsert(entry_id, user_id, hashed, embedding, response, now, now + ttl)
                logger.debug(f'Cached response {entry_id} for user {user_id}')
                return entry_id
            except CacheWriteConflictError as e:
                logger.warning(f'Cache write conflict on {entry_id} (attempt {attempt + 1}): {e}')

        logger.error(f'Giving up cache write for {entry_id} after {self.conflict_retries + 1} attempts')
        return None

    def find_similar(self, user_id: str, query_embedding: Optional[Sequence[float]],
                     threshold: float = 0.95) -> Optional[CacheEntry]:
        """Return the live entry whose query is closest to ``query_embedding`` if at least ``threshold`` similar."""
        require_user_id(user_id)
        if not query_embedding:
            return None

        now = self.clock()
        best, best_similarity = None, threshold
        for entry in self._similar_candidates(user_id, query_embedding, now):
            if entry.user_id != user_id:
                raise UserScopeViolationError(f'Cache entry {entry.id} does not belong to user {user_id}')
            if entry.is_expired(now) or entry.query_embedding is None:
                continue
            try:
                similarity = cosine_similarity(query_embedding, entry.query_embedding)
            except MalformedStoredVectorError as e:
                logger.warning(f'Skipping cache entry {entry.id} with malformed query vector: {e}')
                continue
            if similarity >= best_similarity:
                best, best_similarity = entry, similarity

        if best is not None:
            logger.debug(f'Semantic cache match {best.id} at similarity {best_similarity:.3f}')
        return best

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every expired entry; returns how many were removed."""
        removed = self._purge(now or self.clock())
        logger.info(f'Purged {removed} expired cache entries')
        return removed

    @abstractmethod
    def _get(self, user_id: str, hashed_query: str) -> Optional[CacheEntry]:
        pass

    @abstractmethod
    def _record_hit(self, entry_id: str, now: datetime) -> bool:
        pass

    @abstractmethod
    def _upsert(self, entry_id: str, user_id: str, hashed_query: str, embedding: Optional[list],
                response: CachedResponse, now: datetime, expires_at: datetime) -> None:
        pass

    @abstractmethod
    def _similar_candidates(self, user_id: str, query_embedding: Sequence[float], now: datetime) -> Iterable[CacheEntry]:
        pass

    @abstractmethod
    def _purge(self, now: datetime) -> int:
        pass

    @abstractmethod
    def clear_user(self, user_id: str) -> int:
        """Drop every cache entry of a user."""

    @abstractmethod
    def stats(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Live entry count, total and average hits, optionally for one user."""

    @abstractmethod
    def health_check(self) -> bool:
        pass


def _stats(entries: int, total_hits: int) -> Dict[str, Any]:
    return {
        'entries': entries,
        'total_hits': total_hits,
        'average_hits': (total_hits / entries) if entries else 0.0
    }


class SQLiteSemanticCache(SemanticCache):
    """Response cache on the local SQLite database."""

    def __init__(self, db: SQLiteDatabase, scan_limit: int = 500, **kwargs):
        super().__init__(**kwargs)
        self.db = db
        self.scan_limit = scan_limit
        self.db.migrate()

    @staticmethod
    def _row_to_entry(row) -> CacheEntry:
        embedding = None
        if row['query_embedding'] is not None:
            try:
                embedding = json.loads(row['query_embedding'])
            except json.JSONDecodeError:
                embedding = row['query_embedding']
        return CacheEntry(id=row['id'],
                          user_id=row['user_id'],
                          query_hash=row['query_hash'],
                          cached_response=CachedResponse.from_dict(json.loads(row['cached_response'])),
                          created_at=parse_iso(row['created_at']),
                          expires_at=parse_iso(row['expires_at']),
                          query_embedding=embedding,
                          hit_count=int(row['hit_count']),
                          last_hit=parse_iso(row['last_hit']))

    def _get(self, user_id, hashed_query):
        row = self.db.fetchone('SELECT * FROM cache_entries WHERE user_id = ? AND query_hash = ?', (user_id, hashed_query))
        return self._row_to_entry(row) if row is not None else None

    def _record_hit(self, entry_id, now):
        updated = self.db.execute('UPDATE cache_entries SET hit_count = hit_count + 1, last_hit = ? WHERE id = ?',
                                  (to_iso(now), entry_id))
        return updated > 0

    def _upsert(self, entry_id, user_id, hashed_query, embedding, response, now, expires_at):
        self.db.execute(
            'INSERT INTO cache_entries (id, user_id, query_hash, query_embedding, cached_response, hit_count, created_at, expires_at) '
            'VALUES (?, ?, ?, ?, ?, 0, ?, ?) '
            'ON CONFLICT(user_id, query_hash) DO UPDATE SET '
            'cached_response = excluded.cached_response, '
            'expires_at = excluded.expires_at, '
            'query_embedding = COALESCE(excluded.query_embedding, cache_entries.query_embedding)',
            (entry_id, user_id, hashed_query, json.dumps(embedding) if embedding is not None else None,
             json.dumps(response.to_dict()), to_iso(now), to_iso(expires_at)))

    def _similar_candidates(self, user_id, query_embedding, now):
        rows = self.db.fetchall(
            'SELECT * FROM cache_entries WHERE user_id = ? AND expires_at > ? AND query_embedding IS NOT NULL '
            'ORDER BY created_at DESC LIMIT ?', (user_id, to_iso(now), self.scan_limit))
        return [self._row_to_entry(row) for row in rows]

    def _purge(self, now):
        return self.db.execute('DELETE FROM cache_entries WHERE expires_at <= ?', (to_iso(now),))

    def clear_user(self, user_id):
        require_user_id(user_id)
        removed = self.db.execute('DELETE FROM cache_entries WHERE user_id = ?', (user_id,))
        logger.info(f'Cleared {removed} cache entries for user {user_id}')
        return removed

    def stats(self, user_id=None):
        query = 'SELECT COUNT(*) AS entries, COALESCE(SUM(hit_count), 0) AS hits FROM cache_entries WHERE expires_at > ?'
        params = [to_iso(self.clock())]
        if user_id is not None:
            query += ' AND user_id = ?'
            params.append(require_user_id(user_id))
        row = self.db.fetchone(query, tuple(params))
        return _stats(int(row['entries']), int(row['hits']))

    def health_check(self):
        return self.db.health_check()


class OpenSearchSemanticCache(SemanticCache):
    """Response cache on an OpenSearch index, one document per (user_id, query_hash)."""

    HIT_SCRIPT = 'ctx._source.hit_count = (ctx._source.hit_count == null ? 0 : ctx._source.hit_count) + 1; ' \
                 'ctx._source.last_hit = params.now'

    def __init__(self, client: OpenSearchClient, scan_limit: int = 20, **kwargs):
        super().__init__(**kwargs)
        self.opensearch = client
        self.scan_limit = scan_limit

        try:
            self.opensearch.create_index_if_not_exists(index_type=CACHE_INDEX)
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch cache index: {e}')

    @staticmethod
    def _document_to_entry(doc: Dict[str, Any]) -> CacheEntry:
        return CacheEntry(id=doc['id'],
                          user_id=doc['user_id'],
                          query_hash=doc['query_hash'],
                          cached_response=CachedResponse.from_dict(doc.get('cached_response') or {}),
                          created_at=parse_iso(doc['created_at']),
                          expires_at=parse_iso(doc['expires_at']),
                          query_embedding=doc.get('query_embedding'),
                          hit_count=int(doc.get('hit_count') or 0),
                          last_hit=parse_iso(doc.get('last_hit')))

    def _get(self, user_id, hashed_query):
        doc = self.opensearch.get_document(cache_entry_id(user_id, hashed_query), index_type=CACHE_INDEX)
        if doc is None:
            return None
        if doc.get('user_id') != user_id:
            raise UserScopeViolationError(f'Cache document for user {user_id} is owned by another user')
        return self._document_to_entry(doc)

    def _record_hit(self, entry_id, now):
        return self.opensearch.update_with_script(entry_id, self.HIT_SCRIPT, {'now': to_iso(now)}, index_type=CACHE_INDEX)

    def _upsert(self, entry_id, user_id, hashed_query, embedding, response, now, expires_at):
        doc = {'cached_response': response.to_dict(), 'expires_at': to_iso(expires_at)}
        if embedding is not None:
            doc['query_embedding'] = embedding
        upsert = {
            'id': entry_id,
            'user_id': user_id,
            'query_hash': hashed_query,
            'hit_count': 0,
            'created_at': to_iso(now),
            **doc
        }
        self.opensearch.upsert_document(entry_id, doc=doc, upsert=upsert, index_type=CACHE_INDEX)

    def _similar_candidates(self, user_id, query_embedding, now):
        results = self.opensearch.vector_search(list(query_embedding),
                                                user_id,
                                                top_k=self.scan_limit,
                                                index_type=CACHE_INDEX,
                                                field='query_embedding',
                                                filters=[{'range': {'expires_at': {'gt': to_iso(now)}}}])
        return [self._document_to_entry(result['document']) for result in results]

    def _purge(self, now):
        return self.opensearch.delete_by_query(CACHE_INDEX, filters=[{'range': {'expires_at': {'lte': to_iso(now)}}}])

    def clear_user(self, user_id):
        removed = self.opensearch.delete_by_query(CACHE_INDEX, user_id=user_id)
        logger.info(f'Cleared {removed} cache entries for user {user_id}')
        return removed

    def stats(self, user_id=None):
        live = [{'range': {'expires_at': {'gt': to_iso(self.clock())}}}]
        aggregations = self.opensearch.aggregate(CACHE_INDEX, {'total_hits': {'sum': {'field': 'hit_count'}}},
                                                 user_id=user_id, filters=live)
        entries = self.opensearch.count(user_id=user_id, index_type=CACHE_INDEX, filters=live)
        return _stats(entries, int(aggregations.get('total_hits', {}).get('value') or 0))

    def health_check(self):
        return self.opensearch.health_check()


def create_semantic_cache(app_config: Optional[AppConfig] = None) -> SemanticCache:
    """Build the response cache on the backend selected by ``STORE_BACKEND``."""
    if app_config is None:
        from ..utils.config import config as app_config

    if app_config.store.backend == 'sqlite':
        return SQLiteSemanticCache(get_database(app_config.store.sqlite_path))
    if app_config.store.backend == 'opensearch':
        return OpenSearchSemanticCache(OpenSearchClient(app_config.opensearch))
    raise ValueError(f'Unsupported store backend: {app_config.store.backend}')
