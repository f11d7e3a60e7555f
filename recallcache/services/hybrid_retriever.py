"""
Hybrid retrieval: exact match, vector similarity, recency and content type in one ranking.
"""

from typing import Optional

from ..models.core import RetrievalResult
from ..utils.bedrock_embed import EmbeddingUnavailableError
from ..utils.config import RetrievalConfig
from ..utils.errors import require_user_id
from ..utils.logging_config import get_logger
from ..utils.providers import EmbeddingProvider
from ..utils.text_utils import normalize_query
from .knowledge_store import KnowledgeStore
from .scoring import rank

logger = get_logger(__name__)


class HybridRetriever:
    """Ranks one user's knowledge items against a query."""

    def __init__(self, store: KnowledgeStore, embedder: EmbeddingProvider, config: Optional[RetrievalConfig] = None):
        """
        Initialize the retriever.

        Args:
            store: Knowledge store; its scoring policy is used for ranking
            embedder: Provider used to embed queries
            config: Retrieval settings (top_k, candidate pool, empty-context confidence)
        """
        if config is None:
            from ..utils.config import config as app_config
            config = app_config.retrieval

        self.store = store
        self.embedder = embedder
        self.config = config

    def embed_query(self, query: str):
        """Embed a query, returning None when the provider is unavailable."""
        try:
            return self.embedder.embed_query(query)
        except EmbeddingUnavailableError as e:
            logger.warning(f'Query embedding unavailable, falling back to exact matching: {e}')
            return None

    def retrieve(self, user_id: str, query: str, top_k: Optional[int] = None) -> RetrievalResult:
        """
        Retrieve ranked context for a query.

        Args:
            user_id: Requesting user
            query: Raw query text
            top_k: Override of the configured result cap

        Returns:
            RetrievalResult; an empty context means no relevant memory
        """
        require_user_id(user_id)
        normalized = normalize_query(query)
        if not normalized:
            return RetrievalResult(query=normalized, context=[])

        query_embedding = self.embed_query(query.strip())
        degraded = query_embedding is None

        scored = self.store.search_by_user(user_id, normalized, query_embedding, limit=self.config.candidate_pool)
        context = rank(scored, self.config.top_k if top_k is None else top_k)
        confidence = max((item.confidence for item in context), default=0.0)

        logger.debug(f'Retrieved {len(context)} context items for user {user_id} '
                     f'(candidates: {len(scored)}, degraded: {degraded})')
        return RetrievalResult(query=normalized,
                               context=context,
                               query_embedding=query_embedding,
                               degraded=degraded,
                               confidence=confidence)
