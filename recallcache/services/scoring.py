"""
Hybrid scoring: one pure function mapping match signals to (priority tier, confidence).

Kept free of storage and provider dependencies so both store backends and the
retriever rank candidates identically.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from ..models.core import ContentType, KnowledgeItem, MatchType, ScoredItem
from ..utils.config import RetrievalConfig
from ..utils.errors import MalformedStoredVectorError
from ..utils.text_utils import cosine_similarity, normalize_query


@dataclass(frozen=True)
class ScoringPolicy:
    """Tier and confidence constants for hybrid ranking."""
    exact_match_tier: float = 3.0
    exact_match_confidence: float = 0.95
    similarity_bands: Tuple[Tuple[float, float], ...] = ((0.40, 0.90), (0.30, 0.80), (0.25, 0.70))
    recent_window: timedelta = timedelta(hours=24)
    week_window: timedelta = timedelta(days=7)
    recent_fact_tier: float = 2.5
    recent_other_tier: float = 1.5
    week_tier: float = 1.0
    older_tier: float = 0.5

    @classmethod
    def from_config(cls, config: RetrievalConfig) -> 'ScoringPolicy':
        return cls(exact_match_tier=config.exact_match_tier,
                   exact_match_confidence=config.exact_match_confidence,
                   similarity_bands=tuple(sorted(config.similarity_bands, key=lambda band: band[0], reverse=True)),
                   recent_window=timedelta(hours=config.recent_window_hours),
                   week_window=timedelta(days=config.week_window_days),
                   recent_fact_tier=config.recent_fact_tier,
                   recent_other_tier=config.recent_other_tier,
                   week_tier=config.week_tier,
                   older_tier=config.older_tier)


def similarity_confidence(similarity: float, policy: ScoringPolicy) -> float:
    """Map cosine similarity to a confidence band; below the lowest band is 0.0."""
    for floor, confidence in policy.similarity_bands:
        if similarity > floor:
            return confidence
    return 0.0


def recency_tier(age: timedelta, content_type: ContentType, policy: ScoringPolicy) -> float:
    if age <= policy.recent_window:
        return policy.recent_fact_tier if content_type == ContentType.USER_FACT else policy.recent_other_tier
    if age <= policy.week_window:
        return policy.week_tier
    return policy.older_tier


def score(match_type: MatchType,
          similarity: float,
          age: timedelta,
          content_type: ContentType,
          policy: Optional[ScoringPolicy] = None) -> Tuple[float, float]:
    """Score one candidate.

    Args:
        match_type: EXACT when the normalized query is a substring of the content
        similarity: Cosine similarity to the query (0.0 when unavailable)
        age: Time since the item was created
        content_type: Item content type
        policy: Tier/band constants, defaults if None

    Returns:
        Tuple of (priority_tier, confidence); confidence 0.0 means excluded
    """
    policy = policy or ScoringPolicy()

    # Literal matches always win
    if match_type == MatchType.EXACT:
        return policy.exact_match_tier, policy.exact_match_confidence

    if match_type == MatchType.NONE:
        return 0.0, 0.0

    confidence = similarity_confidence(similarity, policy)
    if confidence == 0.0:
        return 0.0, 0.0
    return recency_tier(age, content_type, policy), confidence


def is_exact_match(normalized_query: str, content: str) -> bool:
    return bool(normalized_query) and normalized_query in normalize_query(content)


def score_item(item: KnowledgeItem,
               normalized_query: str,
               query_embedding: Optional[Sequence[float]],
               now: datetime,
               policy: Optional[ScoringPolicy] = None) -> ScoredItem:
    """Score a stored item against a query.

    Raises:
        MalformedStoredVectorError: If the item is not an exact match and its vector is unusable
    """
    age = max(now - item.created_at, timedelta(0))
    exact = is_exact_match(normalized_query, item.content)
    similarity = 0.0
    if query_embedding and item.embedding is not None:
        try:
            similarity = cosine_similarity(query_embedding, item.embedding)
        except MalformedStoredVectorError:
            if not exact:
                raise

    if exact:
        match_type = MatchType.EXACT
    elif query_embedding and item.embedding is not None:
        match_type = MatchType.VECTOR
    else:
        match_type = MatchType.NONE

    priority_tier, confidence = score(match_type, similarity, age, item.content_type, policy)
    return ScoredItem(item=item,
                      match_type=match_type,
                      similarity=similarity,
                      priority_tier=priority_tier,
                      confidence=confidence)


def rank(scored_items: Sequence[ScoredItem], top_k: int) -> List[ScoredItem]:
    """Drop excluded items, order by (tier, similarity, created_at) descending, cap at top_k."""
    kept = [scored for scored in scored_items if scored.confidence > 0.0]
    kept.sort(key=ScoredItem.sort_key, reverse=True)
    return kept[:max(0, top_k)]
