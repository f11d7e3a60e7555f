"""
Wiring of the retrieval pipeline from configuration.
"""

from dataclasses import dataclass
from typing import Optional

from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig
from ..utils.logging_config import get_logger
from ..utils.providers import EmbeddingProvider, GenerationProvider
from .cache_coordinator import CacheCoordinator
from .conversation_ingester import ConversationIngester
from .fact_extraction import create_fact_extractor
from .hybrid_retriever import HybridRetriever
from .knowledge_store import KnowledgeStore, create_knowledge_store
from .semantic_cache import SemanticCache, create_semantic_cache

logger = get_logger(__name__)


@dataclass
class Pipeline:
    store: KnowledgeStore
    cache: SemanticCache
    retriever: HybridRetriever
    ingester: ConversationIngester
    coordinator: CacheCoordinator

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Finish queued ingestion and pending hit recordings."""
        self.ingester.stop()
        self.ingester.join(timeout)
        self.coordinator.close()


def build_pipeline(app_config: Optional[AppConfig] = None,
                   embedder: Optional[EmbeddingProvider] = None,
                   generator: Optional[GenerationProvider] = None) -> Pipeline:
    """
    Build every component on the configured backend.

    Args:
        app_config: AppConfig instance, uses default if None
        embedder: Embedding provider, BedrockEmbed if None
        generator: Generation provider, BedrockLLM if None

    Returns:
        Pipeline whose ingester is not started yet
    """
    if app_config is None:
        from ..utils.config import config as app_config

    llm = None
    if generator is None or app_config.ingestion.extraction_mode == 'llm':
        llm = BedrockLLM(app_config.bedrock_llm)
    embedder = embedder or BedrockEmbed(app_config.bedrock_embed)
    generator = generator or llm

    store = create_knowledge_store(app_config)
    cache = create_semantic_cache(app_config)
    retriever = HybridRetriever(store, embedder, app_config.retrieval)
    ingester = ConversationIngester(store,
                                    embedder,
                                    extractor=create_fact_extractor(app_config.ingestion, llm),
                                    config=app_config.ingestion)
    coordinator = CacheCoordinator(cache,
                                   retriever,
                                   generator,
                                   ingester=ingester,
                                   config=app_config.cache,
                                   retrieval_config=app_config.retrieval)

    logger.info(f'Built retrieval pipeline on {app_config.store.backend} backend')
    return Pipeline(store=store, cache=cache, retriever=retriever, ingester=ingester, coordinator=coordinator)
