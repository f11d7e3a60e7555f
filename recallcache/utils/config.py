"""
Configuration management for AWS services and retrieval pipeline settings.
"""

import os
from dataclasses import dataclass
from typing import List, Tuple

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    read_timeout: float = 120.0  # per-call socket timeout, kept within the generation timeout


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int


@dataclass
class StoreConfig:
    """Configuration for the durable store backend."""
    backend: str  # opensearch | sqlite
    sqlite_path: str


@dataclass
class RetrievalConfig:
    """Configuration for hybrid retrieval and scoring."""
    top_k: int
    candidate_pool: int
    exact_match_tier: float
    exact_match_confidence: float
    similarity_bands: List[Tuple[float, float]]  # (similarity floor, confidence), highest floor first
    recent_window_hours: float
    week_window_days: float
    recent_fact_tier: float
    recent_other_tier: float
    week_tier: float
    older_tier: float
    no_context_confidence: float


@dataclass
class CacheConfig:
    """Configuration for the semantic response cache."""
    ttl_hours: float
    similarity_lookup: bool
    similarity_threshold: float
    generation_timeout_seconds: float
    hit_workers: int


@dataclass
class IngestionConfig:
    """Configuration for background conversation ingestion."""
    queue_size: int
    dedup_window_days: float
    dedup_similarity: float
    extraction_mode: str  # heuristic | llm
    store_conversations: bool
    max_excerpt_chars: int


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    store: StoreConfig
    retrieval: RetrievalConfig
    cache: CacheConfig
    ingestion: IngestionConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def parse_similarity_bands(raw: str) -> List[Tuple[float, float]]:
    """Parse ``"0.40:0.90,0.30:0.80"`` into ``[(0.40, 0.90), (0.30, 0.80)]``.

    Bands are returned sorted by similarity floor, highest first.

    Raises:
        ValueError: If a band is not a ``floor:confidence`` pair
    """
    bands = []
    for part in raw.split(','):
        part = part.strip()
        if not part:
            continue
        floor, _, confidence = part.partition(':')
        if not confidence:
            raise ValueError(f'Invalid similarity band: {part!r}')
        bands.append((float(floor), float(confidence)))
    bands.sort(key=lambda band: band[0], reverse=True)
    return bands


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')
    generation_timeout = float(os.getenv('GENERATION_TIMEOUT_SECONDS', '30'))

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '500')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.7')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '2')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          read_timeout=min(float(os.getenv('BEDROCK_LLM_READ_TIMEOUT', str(generation_timeout))),
                                                           generation_timeout))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '2')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '0.5')))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'recallcache'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    store_config = StoreConfig(backend=os.getenv('STORE_BACKEND', 'opensearch').strip().lower(),
                               sqlite_path=os.getenv('SQLITE_PATH', '.recallcache/recallcache.db'))

    # Retrieval policy; the defaults are a starting point, not a contract
    retrieval_config = RetrievalConfig(
        top_k=int(os.getenv('RETRIEVAL_TOP_K', '6')),
        candidate_pool=int(os.getenv('RETRIEVAL_CANDIDATE_POOL', '50')),
        exact_match_tier=float(os.getenv('RETRIEVAL_EXACT_MATCH_TIER', '3.0')),
        exact_match_confidence=float(os.getenv('RETRIEVAL_EXACT_MATCH_CONFIDENCE', '0.95')),
        similarity_bands=parse_similarity_bands(os.getenv('RETRIEVAL_SIMILARITY_BANDS', '0.40:0.90,0.30:0.80,0.25:0.70')),
        recent_window_hours=float(os.getenv('RETRIEVAL_RECENT_WINDOW_HOURS', '24')),
        week_window_days=float(os.getenv('RETRIEVAL_WEEK_WINDOW_DAYS', '7')),
        recent_fact_tier=float(os.getenv('RETRIEVAL_RECENT_FACT_TIER', '2.5')),
        recent_other_tier=float(os.getenv('RETRIEVAL_RECENT_OTHER_TIER', '1.5')),
        week_tier=float(os.getenv('RETRIEVAL_WEEK_TIER', '1.0')),
        older_tier=float(os.getenv('RETRIEVAL_OLDER_TIER', '0.5')),
        no_context_confidence=float(os.getenv('RETRIEVAL_NO_CONTEXT_CONFIDENCE', '0.5')))

    cache_config = CacheConfig(ttl_hours=float(os.getenv('CACHE_TTL_HOURS', '24')),
                               similarity_lookup=_env_bool('CACHE_SIMILARITY_LOOKUP', 'false'),
                               similarity_threshold=float(os.getenv('CACHE_SIMILARITY_THRESHOLD', '0.95')),
                               generation_timeout_seconds=generation_timeout,
                               hit_workers=int(os.getenv('CACHE_HIT_WORKERS', '2')))

    ingestion_config = IngestionConfig(queue_size=int(os.getenv('INGESTION_QUEUE_SIZE', '256')),
                                       dedup_window_days=float(os.getenv('INGESTION_DEDUP_WINDOW_DAYS', '7')),
                                       dedup_similarity=float(os.getenv('INGESTION_DEDUP_SIMILARITY', '0.97')),
                                       extraction_mode=os.getenv('INGESTION_EXTRACTION_MODE', 'heuristic').strip().lower(),
                                       store_conversations=_env_bool('INGESTION_STORE_CONVERSATIONS', 'true'),
                                       max_excerpt_chars=int(os.getenv('INGESTION_MAX_EXCERPT_CHARS', '1000')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     store=store_config,
                     retrieval=retrieval_config,
                     cache=cache_config,
                     ingestion=ingestion_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
