"""
Cache-first response flow: lookup, then retrieve, generate and store on a miss.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import timedelta
from typing import List, Optional, Sequence

from ..models.core import CachedResponse, ChatResponse, ChatTurn, ContextItem, RetrievalResult
from ..utils.bedrock_llm import GenerationFailedError
from ..utils.config import CacheConfig, RetrievalConfig
from ..utils.errors import RequestCancelledError, StoreError, UserScopeViolationError, require_user_id
from ..utils.logging_config import get_logger
from ..utils.providers import GenerationProvider
from ..utils.text_utils import normalize_query
from .conversation_ingester import ConversationIngester
from .hybrid_retriever import HybridRetriever
from .semantic_cache import SemanticCache

logger = get_logger(__name__)

EXCERPT_CONFIDENCE = 1.0


class CacheCoordinator:
    """Runs LOOKUP -> HIT | MISS -> RETRIEVE -> GENERATE -> STORE for each chat turn."""

    def __init__(self,
                 cache: SemanticCache,
                 retriever: HybridRetriever,
                 generator: GenerationProvider,
                 ingester: Optional[ConversationIngester] = None,
                 config: Optional[CacheConfig] = None,
                 retrieval_config: Optional[RetrievalConfig] = None):
        """
        Initialize the coordinator.

        Args:
            cache: Response cache
            retriever: Context retriever used on a miss
            generator: Answer generator used on a miss
            ingester: Optional background learner fed every answered turn
            config: Cache settings (TTL, similarity lookup, generation timeout)
            retrieval_config: Retrieval settings (confidence reported without context)
        """
        if config is None or retrieval_config is None:
            from ..utils.config import config as app_config
            config = config or app_config.cache
            retrieval_config = retrieval_config or app_config.retrieval

        self.cache = cache
        self.retriever = retriever
        self.generator = generator
        self.ingester = ingester
        self.config = config
        self.retrieval_config = retrieval_config

        self._hit_pool = ThreadPoolExecutor(max_workers=max(1, config.hit_workers), thread_name_prefix='cache-hit')

    def lookup(self, user_id: str, query: str) -> Optional[ChatResponse]:
        """
        Return the cached answer for a query, if any.

        The hit is recorded in the background; a failure to record it is only logged.
        """
        normalized = normalize_query(query)
        if not normalized:
            return None

        entry = self.cache.lookup(user_id, normalized)
        if entry is None and self.config.similarity_lookup:
            query_embedding = self.retriever.embed_query(query.strip())
            entry = self.cache.find_similar(user_id, query_embedding, self.config.similarity_threshold)
        if entry is None:
            logger.debug(f'Cache miss for user {user_id}')
            return None

        logger.info(f'Cache hit {entry.id} for user {user_id}')
        self._hit_pool.submit(self._record_hit, entry.id)
        cached = entry.cached_response
        return ChatResponse(answer=cached.answer, sources=list(cached.sources), confidence=cached.confidence, cache_hit=True)

    def _record_hit(self, entry_id: str) -> None:
        try:
            if not self.cache.record_hit(entry_id):
                logger.warning(f'Cache entry {entry_id} disappeared before its hit was recorded')
        except Exception as e:
            logger.error(f'Failed to record cache hit for {entry_id}: {e}')

    def store(self,
              user_id: str,
              query: str,
              query_embedding: Optional[Sequence[float]],
              response: CachedResponse,
              cancel_event: Optional[threading.Event] = None) -> Optional[str]:
        """Cache an answer with the configured TTL; store failures are logged, not raised.

        Nothing is written once ``cancel_event`` is set.
        """
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f'Request of user {user_id} cancelled, answer not cached')
            return None
        try:
            return self.cache.upsert(user_id,
                                     normalize_query(query),
                                     query_embedding,
                                     response,
                                     ttl=timedelta(hours=self.config.ttl_hours))
        except StoreError as e:
            logger.error(f'Failed to cache response for user {user_id}: {e}')
            return None

    def _retrieve(self, user_id: str, query: str) -> RetrievalResult:
        try:
            return self.retriever.retrieve(user_id, query)
        except UserScopeViolationError:
            raise
        except Exception as e:
            logger.error(f'Retrieval failed for user {user_id}, answering without context: {e}')
            return RetrievalResult(query=normalize_query(query), context=[], degraded=True)

    def _generate(self, query: str, context: List[ContextItem]) -> str:
        future = Future()

        def run() -> None:
            future.set_running_or_notify_cancel()
            try:
                future.set_result(self.generator.generate(query, context))
            except Exception as e:
                future.set_exception(e)

        # A timed-out call keeps its own thread until the provider's read timeout ends it
        threading.Thread(target=run, name='generation', daemon=True).start()
        try:
            return future.result(timeout=self.config.generation_timeout_seconds)
        except FutureTimeoutError:
            logger.error(f'Generation timed out after {self.config.generation_timeout_seconds}s')
            raise GenerationFailedError(f'Generation timed out after {self.config.generation_timeout_seconds}s')
        except GenerationFailedError:
            raise
        except Exception as e:
            logger.error(f'Generation failed: {e}')
            raise GenerationFailedError(f'Generation failed: {e}')

    def respond(self, turn: ChatTurn, cancel_event: Optional[threading.Event] = None) -> ChatResponse:
        """
        Answer a chat turn, from the cache when possible.

        Args:
            turn: Inbound chat turn
            cancel_event: Set by the caller to abandon the request

        Returns:
            ChatResponse with cache_hit telling which path answered

        Raises:
            ValueError: If the message is empty
            GenerationFailedError: If generation fails or times out; nothing is cached
            RequestCancelledError: If cancel_event was set before the answer was stored
        """
        user_id = require_user_id(turn.user_id)
        if not normalize_query(turn.text):
            raise ValueError('Message must not be empty')

        excerpts = [excerpt for excerpt in turn.prior_document_excerpts if excerpt.text and excerpt.text.strip()]
        # Answers grounded in turn-specific excerpts are neither served from nor written to the cache
        cached = None if excerpts else self.lookup(user_id, turn.text)
        if cached is not None:
            self._schedule_ingestion(turn, cached.answer)
            return cached

        result = self._retrieve(user_id, turn.text)
        context = [scored.to_context() for scored in result.context]
        context += [
            ContextItem(content=excerpt.text, source=excerpt.source, confidence=EXCERPT_CONFIDENCE)
            for excerpt in excerpts
        ]

        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelledError(f'Request of user {user_id} cancelled before generation')
        answer = self._generate(turn.text, context)
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f'Request of user {user_id} cancelled, discarding answer')
            raise RequestCancelledError(f'Request of user {user_id} cancelled during generation')

        confidence = result.confidence if result.context else self.retrieval_config.no_context_confidence
        sources = []
        for item in context:
            if item.source not in sources:
                sources.append(item.source)

        if not excerpts:
            self.store(user_id,
                       turn.text,
                       result.query_embedding,
                       CachedResponse(answer=answer,
                                      sources=sources,
                                      confidence=confidence,
                                      context=[{'content': item.content, 'score': item.confidence} for item in context]),
                       cancel_event=cancel_event)

        self._schedule_ingestion(turn, answer)
        return ChatResponse(answer=answer, sources=sources, confidence=confidence, cache_hit=False)

    def _schedule_ingestion(self, turn: ChatTurn, answer: str) -> None:
        if self.ingester is None:
            return
        try:
            self.ingester.submit(turn, answer)
        except Exception as e:
            logger.error(f'Failed to schedule ingestion for user {turn.user_id}: {e}')

    def close(self) -> None:
        """Wait for pending hit recordings."""
        self._hit_pool.shutdown(wait=True)
