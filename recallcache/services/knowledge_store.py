"""
Per-user knowledge store with OpenSearch and SQLite backends.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from ..models.core import ContentType, KnowledgeItem, ScoredItem
from ..utils.config import AppConfig
from ..utils.errors import MalformedStoredVectorError, UserScopeViolationError, require_user_id
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import KNOWLEDGE_INDEX, OpenSearchClient, OpenSearchError
from ..utils.sqlite_client import SQLiteDatabase, get_database
from ..utils.text_utils import normalize_query
from ..utils.timestamp_utils import parse_iso, to_iso, utc_now
from .scoring import ScoringPolicy, score_item

logger = get_logger(__name__)


def item_to_document(item: KnowledgeItem) -> Dict[str, Any]:
    return {
        'id': item.id,
        'user_id': item.user_id,
        'content': item.content,
        'content_type': item.content_type.value,
        'embedding': item.embedding,
        'topics': list(item.topics),
        'metadata': dict(item.metadata),
        'created_at': to_iso(item.created_at)
    }


def document_to_item(doc: Dict[str, Any]) -> KnowledgeItem:
    return KnowledgeItem(id=doc['id'],
                         user_id=doc['user_id'],
                         content=doc.get('content', ''),
                         content_type=ContentType(doc.get('content_type', ContentType.CONVERSATION.value)),
                         created_at=parse_iso(doc['created_at']),
                         embedding=doc.get('embedding'),
                         topics=list(doc.get('topics') or []),
                         metadata=dict(doc.get('metadata') or {}))


class KnowledgeStore(ABC):
    """Durable per-user collection of immutable knowledge items.

    Subclasses only fetch candidates with user-scoped queries; scoring is shared.
    """

    def __init__(self, policy: Optional[ScoringPolicy] = None, clock: Callable[[], datetime] = utc_now):
        self.policy = policy or ScoringPolicy()
        self.clock = clock

    def insert(self, item: KnowledgeItem) -> str:
        """Store a new item.

        Returns:
            The item id

        Raises:
            UserScopeViolationError: If the item has no user_id
            ValueError: If the item has no content
        """
        require_user_id(item.user_id)
        if not item.content or not item.content.strip():
            raise ValueError('Knowledge item content must not be empty')

        self._insert(item)
        logger.debug(f'Inserted {item.content_type.value} item {item.id} for user {item.user_id}')
        return item.id

    def search_by_user(self,
                       user_id: str,
                       query: str,
                       query_embedding: Optional[Sequence[float]],
                       limit: int) -> List[ScoredItem]:
        """Score the user's candidate items against a query.

        Args:
            user_id: Requesting user; candidates are fetched with this filter only
            query: Raw or normalized query text
            query_embedding: Query vector, None when embedding is unavailable
            limit: Candidate budget per signal

        Returns:
            Scored items of ``user_id`` (unsorted; zero confidence included)

        Raises:
            UserScopeViolationError: If user_id is missing or a candidate belongs to another user
        """
        require_user_id(user_id)
        normalized = normalize_query(query)
        now = self.clock()

        scored = []
        seen = set()
        for item in self._candidates(user_id, normalized, query_embedding, limit):
            if item.user_id != user_id:
                raise UserScopeViolationError(f'Candidate {item.id} does not belong to user {user_id}')
            if item.id in seen:
                continue
            seen.add(item.id)
            try:
                scored.append(score_item(item, normalized, query_embedding, now, self.policy))
            except MalformedStoredVectorError as e:
                logger.warning(f'Skipping item {item.id} with malformed stored vector: {e}')

        logger.debug(f'Scored {len(scored)} candidates for user {user_id}')
        return scored

    @abstractmethod
    def _insert(self, item: KnowledgeItem) -> None:
        """Persist a validated item."""

    @abstractmethod
    def _candidates(self, user_id: str, normalized_query: str, query_embedding: Optional[Sequence[float]],
                    limit: int) -> Iterable[KnowledgeItem]:
        """Yield candidate items of one user: substring matches plus vector candidates."""

    @abstractmethod
    def recent_items(self,
                     user_id: str,
                     content_type: Optional[ContentType] = None,
                     since: Optional[datetime] = None,
                     limit: int = 100) -> List[KnowledgeItem]:
        """List a user's items newest first."""

    @abstractmethod
    def count(self, user_id: str) -> int:
        """Number of items owned by a user."""

    @abstractmethod
    def iter_by_user(self, user_id: str, batch_size: int = 500) -> Iterator[KnowledgeItem]:
        """Yield every item of a user newest first, in pages of batch_size."""

    @abstractmethod
    def delete_user_data(self, user_id: str) -> int:
        """Erase every item of a user on explicit request; returns the number removed."""

    @abstractmethod
    def health_check(self) -> bool:
        """True if the backend answers."""


class SQLiteKnowledgeStore(KnowledgeStore):
    """Knowledge store on a local SQLite database.

    Vector candidates are the user's most recent embedded items, compared in process.
    """

    def __init__(self, db: SQLiteDatabase, scan_limit: int = 2000, **kwargs):
        super().__init__(**kwargs)
        self.db = db
        self.scan_limit = scan_limit
        self.db.migrate()

    @staticmethod
    def _decode_vector(raw: Optional[str]) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            # Left as-is; scoring reports it as a malformed vector
            return raw

    def _row_to_item(self, row) -> KnowledgeItem:
        return KnowledgeItem(id=row['id'],
                             user_id=row['user_id'],
                             content=row['content'],
                             content_type=ContentType(row['content_type']),
                             created_at=parse_iso(row['created_at']),
                             embedding=self._decode_vector(row['embedding']),
                             topics=json.loads(row['topics'] or '[]'),
                             metadata=json.loads(row['metadata'] or '{}'))

    def _insert(self, item: KnowledgeItem) -> None:
        self.db.execute(
            'INSERT INTO knowledge_items (id, user_id, content, content_type, embedding, topics, metadata, created_at) '
            'VALUES (?, ?, ?, ?, ?, ?, ?, ?)',
            (item.id, item.user_id, item.content, item.content_type.value,
             json.dumps(item.embedding) if item.embedding is not None else None,
             json.dumps(list(item.topics)), json.dumps(dict(item.metadata)), to_iso(item.created_at)))

    def _candidates(self, user_id, normalized_query, query_embedding, limit):
        if normalized_query:
            rows = self.db.fetchall(
                'SELECT * FROM knowledge_items WHERE user_id = ? AND instr(normalize_text(content), ?) > 0 '
                'ORDER BY created_at DESC LIMIT ?', (user_id, normalized_query, limit))
            for row in rows:
                yield self._row_to_item(row)

        if query_embedding:
            rows = self.db.fetchall(
                'SELECT * FROM knowledge_items WHERE user_id = ? AND embedding IS NOT NULL '
                'ORDER BY created_at DESC LIMIT ?', (user_id, max(limit, self.scan_limit)))
            for row in rows:
                yield self._row_to_item(row)

    def recent_items(self, user_id, content_type=None, since=None, limit=100):
        require_user_id(user_id)
        query = 'SELECT * FROM knowledge_items WHERE user_id = ?'
        params = [user_id]
        if content_type is not None:
            query += ' AND content_type = ?'
            params.append(content_type.value)
        if since is not None:
            query += ' AND created_at >= ?'
            params.append(to_iso(since))
        query += ' ORDER BY created_at DESC LIMIT ?'
        params.append(limit)
        return [self._row_to_item(row) for row in self.db.fetchall(query, tuple(params))]

    def count(self, user_id):
        require_user_id(user_id)
        return int(self.db.fetchone('SELECT COUNT(*) FROM knowledge_items WHERE user_id = ?', (user_id,))[0])

    def iter_by_user(self, user_id, batch_size=500):
        require_user_id(user_id)
        cursor = None
        while True:
            if cursor is None:
                rows = self.db.fetchall(
                    'SELECT * FROM knowledge_items WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?',
                    (user_id, batch_size))
            else:
                rows = self.db.fetchall(
                    'SELECT * FROM knowledge_items WHERE user_id = ? AND (created_at, id) < (?, ?) '
                    'ORDER BY created_at DESC, id DESC LIMIT ?', (user_id, cursor[0], cursor[1], batch_size))
            for row in rows:
                yield self._row_to_item(row)
            if len(rows) < batch_size:
                return
            cursor = (rows[-1]['created_at'], rows[-1]['id'])

    def delete_user_data(self, user_id):
        require_user_id(user_id)
        deleted = self.db.execute('DELETE FROM knowledge_items WHERE user_id = ?', (user_id,))
        logger.info(f'Deleted {deleted} knowledge items for user {user_id}')
        return deleted

    def health_check(self):
        return self.db.health_check()


class OpenSearchKnowledgeStore(KnowledgeStore):
    """Knowledge store on an OpenSearch k-NN index."""

    def __init__(self, client: OpenSearchClient, **kwargs):
        super().__init__(**kwargs)
        self.opensearch = client

        try:
            self.opensearch.create_index_if_not_exists(index_type=KNOWLEDGE_INDEX)
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch knowledge index: {e}')

    def _insert(self, item: KnowledgeItem) -> None:
        document = item_to_document(item)
        if document['embedding'] is None:
            del document['embedding']
        if not self.opensearch.index_document(document, doc_id=item.id, index_type=KNOWLEDGE_INDEX):
            raise OpenSearchError(f'Knowledge item {item.id} was not indexed')

    def _candidates(self, user_id, normalized_query, query_embedding, limit):
        results = []
        if normalized_query:
            results += self.opensearch.keyword_search(normalized_query, user_id, top_k=limit, phrase=True)
            results += self.opensearch.keyword_search(normalized_query, user_id, top_k=limit)
        if query_embedding:
            results += self.opensearch.vector_search(list(query_embedding), user_id, top_k=limit)
        for result in results:
            yield document_to_item(result['document'])

    def recent_items(self, user_id, content_type=None, since=None, limit=100):
        filters = []
        if content_type is not None:
            filters.append({'term': {'content_type': content_type.value}})
        if since is not None:
            filters.append({'range': {'created_at': {'gte': to_iso(since)}}})
        results = self.opensearch.filtered_search(user_id, filters=filters, top_k=limit)
        return [document_to_item(result['document']) for result in results]

    def count(self, user_id):
        return self.opensearch.count(user_id=user_id, index_type=KNOWLEDGE_INDEX)

    def iter_by_user(self, user_id, batch_size=500):
        search_after = None
        while True:
            results = self.opensearch.filtered_search(user_id, top_k=batch_size, search_after=search_after)
            for result in results:
                yield document_to_item(result['document'])
            if len(results) < batch_size:
                return
            search_after = results[-1]['sort']

    def delete_user_data(self, user_id):
        deleted = self.opensearch.delete_by_query(KNOWLEDGE_INDEX, user_id=user_id)
        logger.info(f'Deleted {deleted} knowledge items for user {user_id}')
        return deleted

    def health_check(self):
        return self.opensearch.health_check()


def create_knowledge_store(app_config: Optional[AppConfig] = None) -> KnowledgeStore:
    """Build the knowledge store selected by ``STORE_BACKEND``."""
    if app_config is None:
        from ..utils.config import config as app_config

    policy = ScoringPolicy.from_config(app_config.retrieval)
    if app_config.store.backend == 'sqlite':
        return SQLiteKnowledgeStore(get_database(app_config.store.sqlite_path), policy=policy)
    if app_config.store.backend == 'opensearch':
        return OpenSearchKnowledgeStore(OpenSearchClient(app_config.opensearch), policy=policy)
    raise ValueError(f'Unsupported store backend: {app_config.store.backend}')
