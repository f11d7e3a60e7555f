"""
Background learning of durable user facts from finished chat turns.
"""

import queue
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from ..models.core import ChatTurn, ContentType, DocumentExcerpt, KnowledgeItem
from ..utils.bedrock_embed import EmbeddingUnavailableError
from ..utils.config import IngestionConfig
from ..utils.errors import MalformedStoredVectorError, require_user_id
from ..utils.logging_config import get_logger
from ..utils.providers import EmbeddingProvider
from ..utils.text_utils import chunk_text, cosine_similarity, normalize_query
from ..utils.timestamp_utils import utc_now
from .fact_extraction import ExtractedFact, FactExtractor, HeuristicFactExtractor
from .knowledge_store import KnowledgeStore

logger = get_logger(__name__)

_STOP = object()


class ConversationIngester:
    """Turns chat turns into knowledge items on a single worker thread.

    Nothing here runs on the response path: ``submit`` only enqueues, and worker
    failures are reported through ``failures`` and ``on_error``.
    """

    def __init__(self,
                 store: KnowledgeStore,
                 embedder: EmbeddingProvider,
                 extractor: Optional[FactExtractor] = None,
                 config: Optional[IngestionConfig] = None,
                 clock: Callable[[], datetime] = utc_now,
                 on_error: Optional[Callable[[ChatTurn, Exception], None]] = None):
        """
        Initialize the ingester; call ``start`` to run the worker.

        Args:
            store: Knowledge store receiving new items
            embedder: Provider used to embed new items
            extractor: Fact extractor, heuristic by default
            config: Ingestion settings
            clock: Source of item timestamps
            on_error: Called with the turn and the exception when ingestion fails
        """
        if config is None:
            from ..utils.config import config as app_config
            config = app_config.ingestion

        self.store = store
        self.embedder = embedder
        self.extractor = extractor or HeuristicFactExtractor()
        self.config = config
        self.clock = clock
        self.on_error = on_error

        self.failures = 0
        self.dropped = 0
        self._counter_lock = threading.Lock()
        self._queue = queue.Queue(maxsize=config.queue_size)
        self._worker = None

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, name='conversation-ingester', daemon=True)
        self._worker.start()
        logger.info('Started conversation ingester')

    def stop(self) -> None:
        """Ask the worker to exit after the turns already queued."""
        if self._worker is None:
            return
        self._queue.put(_STOP)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._worker is not None:
            self._worker.join(timeout)

    def submit(self, turn: ChatTurn, answer: str) -> bool:
        """
        Queue a finished turn without blocking.

        Returns:
            False if the queue was full and the turn was dropped
        """
        try:
            self._queue.put_nowait((turn, answer))
            return True
        except queue.Full:
            with self._counter_lock:
                self.dropped += 1
            logger.warning(f'Ingestion queue full, dropping turn of user {turn.user_id}')
            return False

    def _run(self) -> None:
        while True:
            work = self._queue.get()
            try:
                if work is _STOP:
                    logger.info('Stopping conversation ingester')
                    return
                turn, answer = work
                self.ingest_turn(turn, answer)
            except Exception as e:
                self._record_failure(work[0], e)
            finally:
                self._queue.task_done()

    def _record_failure(self, turn: ChatTurn, error: Exception) -> None:
        with self._counter_lock:
            self.failures += 1
        logger.error(f'Ingestion failed for user {turn.user_id}: {error}')
        if self.on_error is not None:
            try:
                self.on_error(turn, error)
            except Exception as e:
                logger.error(f'Ingestion error callback failed: {e}')

    def _embed(self, text: str) -> Optional[List[float]]:
        try:
            return self.embedder.embed(text)
        except EmbeddingUnavailableError as e:
            logger.warning(f'Storing item without embedding: {e}')
            return None

    def _is_duplicate(self, fact: ExtractedFact, embedding: Optional[Sequence[float]], known: List[KnowledgeItem]) -> bool:
        normalized = normalize_query(fact.content)
        for item in known:
            if normalize_query(item.content) == normalized:
                return True
            # Corrections restate a fact with a new value; only identical text is a duplicate
            if fact.is_correction or embedding is None or item.embedding is None:
                continue
            try:
                if cosine_similarity(embedding, item.embedding) >= self.config.dedup_similarity:
                    return True
            except MalformedStoredVectorError:
                continue
        return False

    def _new_item(self, user_id: str, content: str, content_type: ContentType, now: datetime, topics=None,
                  metadata=None) -> KnowledgeItem:
        return KnowledgeItem(id=str(uuid.uuid4()),
                             user_id=user_id,
                             content=content,
                             content_type=content_type,
                             created_at=now,
                             embedding=self._embed(content),
                             topics=list(topics or []),
                             metadata=dict(metadata or {}))

    def ingest_turn(self, turn: ChatTurn, answer: str) -> List[str]:
        """
        Learn from one turn.

        Args:
            turn: The user's turn, with any document excerpts sent alongside
            answer: The assistant's answer

        Returns:
            Ids of the items stored
        """
        user_id = require_user_id(turn.user_id)
        now = self.clock()
        since = now - timedelta(days=self.config.dedup_window_days)
        stored = []

        facts = self.extractor.extract(turn.text)
        if facts:
            known = self.store.recent_items(user_id, content_type=ContentType.USER_FACT, since=since)
            for fact in facts:
                item = self._new_item(user_id, fact.content, ContentType.USER_FACT, now, topics=fact.topics,
                                      metadata={'extractor': type(self.extractor).__name__})
                if self._is_duplicate(fact, item.embedding, known):
                    logger.debug(f'Skipping known fact for user {user_id}')
                    continue
                stored.append(self.store.insert(item))
                known.append(item)

        if stored and self.config.store_conversations:
            snippet = f'User: {turn.text.strip()}\nAssistant: {answer.strip()}'[:self.config.max_excerpt_chars]
            stored.append(self.store.insert(self._new_item(user_id, snippet, ContentType.CONVERSATION, now)))

        if turn.prior_document_excerpts:
            stored.extend(self.ingest_excerpts(user_id, turn.prior_document_excerpts))

        if stored:
            logger.info(f'Ingested {len(stored)} items for user {user_id}')
        return stored

    def ingest_excerpts(self, user_id: str, excerpts: Sequence[DocumentExcerpt]) -> List[str]:
        """Chunk and store document excerpts, skipping chunks already stored within the de-duplication window."""
        user_id = require_user_id(user_id)
        now = self.clock()
        since = now - timedelta(days=self.config.dedup_window_days)
        known = {
            normalize_query(item.content)
            for item in self.store.recent_items(user_id, content_type=ContentType.DOCUMENT_EXCERPT, since=since,
                                                limit=1000)
        }
        stored = []
        for excerpt in excerpts:
            for index, chunk in enumerate(chunk_text(excerpt.text, self.config.max_excerpt_chars)):
                normalized = normalize_query(chunk)
                if not normalized or normalized in known:
                    continue
                item = self._new_item(user_id, chunk, ContentType.DOCUMENT_EXCERPT, now,
                                      metadata={'source': excerpt.source, 'chunk': index})
                stored.append(self.store.insert(item))
                known.add(normalized)
        return stored
