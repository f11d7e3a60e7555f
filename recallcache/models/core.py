"""
Core data models for the per-user knowledge store and response cache.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ContentType(str, Enum):
    """Kind of content held by a knowledge item."""
    USER_FACT = 'user_fact'
    CONVERSATION = 'conversation'
    DOCUMENT_EXCERPT = 'document_excerpt'
    AI_RESPONSE = 'ai_response'


class MatchType(str, Enum):
    """How a candidate item matched the query."""
    EXACT = 'exact'
    VECTOR = 'vector'
    NONE = 'none'


@dataclass(frozen=True)
class KnowledgeItem:
    """A durable fact or conversation snippet belonging to exactly one user.

    Items are immutable: corrections are appended as new items so that ranking can
    resolve conflicting facts by ``created_at``.
    """
    id: str
    user_id: str  # Owner; every query path filters on it
    content: str
    content_type: ContentType
    created_at: datetime
    embedding: Optional[List[float]] = None  # None when embedding generation failed
    topics: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> str:
        return str(self.metadata.get('source') or self.content_type.value)


@dataclass
class ScoredItem:
    """A knowledge item annotated with its ranking signals."""
    item: KnowledgeItem
    match_type: MatchType
    similarity: float
    priority_tier: float
    confidence: float

    def sort_key(self):
        # priority_tier DESC, similarity DESC, created_at DESC
        return (self.priority_tier, self.similarity, self.item.created_at.timestamp())

    def to_context(self) -> 'ContextItem':
        return ContextItem(content=self.item.content, source=self.item.source, confidence=self.confidence)


@dataclass
class ContextItem:
    """A piece of context handed to the generation call."""
    content: str
    source: str
    confidence: float


@dataclass
class RetrievalResult:
    """Ranked, confidence-annotated context for a query."""
    query: str
    context: List[ScoredItem]
    query_embedding: Optional[List[float]] = None
    degraded: bool = False  # True when the query could not be embedded
    confidence: float = 0.0

    @property
    def sources(self) -> List[str]:
        seen = []
        for scored in self.context:
            if scored.item.source not in seen:
                seen.append(scored.item.source)
        return seen


@dataclass
class CachedResponse:
    """Answer payload replayed on a cache hit."""
    answer: str
    sources: List[str] = field(default_factory=list)
    confidence: float = 0.0
    context: List[Dict[str, Any]] = field(default_factory=list)  # [{'content': ..., 'score': ...}]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CachedResponse':
        return cls(answer=str(data.get('answer', '')),
                   sources=list(data.get('sources') or []),
                   confidence=float(data.get('confidence', 0.0)),
                   context=list(data.get('context') or []))


@dataclass
class CacheEntry:
    """A memoized (query, answer) pair scoped to one user; unique per (user_id, query_hash)."""
    id: str
    user_id: str
    query_hash: str
    cached_response: CachedResponse
    created_at: datetime
    expires_at: datetime
    query_embedding: Optional[List[float]] = None
    hit_count: int = 0
    last_hit: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class DocumentExcerpt:
    """Pre-extracted document text supplied with a chat turn."""
    source: str
    text: str


@dataclass
class ChatTurn:
    """Inbound chat turn."""
    user_id: str
    text: str
    prior_document_excerpts: List[DocumentExcerpt] = field(default_factory=list)


@dataclass
class ChatResponse:
    """Outbound response payload."""
    answer: str
    sources: List[str]
    confidence: float
    cache_hit: bool

    def to_dict(self) -> Dict[str, Any]:
        return {'answer': self.answer, 'sources': self.sources, 'confidence': self.confidence, 'cacheHit': self.cache_hit}
