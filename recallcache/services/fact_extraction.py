"""
Fact extraction from user chat messages.

Only statements a user makes about themselves are kept: questions, small talk
and shopping or navigation commands carry no durable facts.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from ..utils.bedrock_llm import BedrockLLM, GenerationFailedError
from ..utils.config import IngestionConfig
from ..utils.json_utils import parse_json_list
from ..utils.logging_config import get_logger
from ..utils.text_utils import split_sentences

logger = get_logger(__name__)

TOPICS = ('identity', 'occupation', 'preference', 'location', 'correction')

_QUESTION = re.compile(r"^(?:what|who|whom|whose|where|when|why|how|which|is|are|am|do|does|did|can|could|"
                       r"would|will|should|shall|may|have|has)\b")
_SMALL_TALK = re.compile(r"^(?:hi|hello|hey|yo|thanks|thank you|thx|ok|okay|cool|great|bye|goodbye|"
                         r"good (?:morning|afternoon|evening|night)|see you)(?: there| so much| again)?[\s!.,]*$")
_COMMAND = re.compile(r"^(?:please\s+)?(?:show|find|search|look up|add|remove|delete|go|open|buy|order|checkout|"
                      r"check out|navigate|take me|list|compare|track|cancel|sort|filter)\b")

_FACT_PATTERNS = (
    ('identity', re.compile(r"\bmy name is\b|\bcall me\b|\bi go by\b|\b(?:i am|i'm) (?:a|an) \w+")),
    ('occupation', re.compile(r"\bi work(?:ed)? (?:at|for|as|in|on)\b|\bmy (?:job|role|profession|occupation)\b")),
    ('preference', re.compile(r"\bi (?:really )?(?:like|love|prefer|hate|dislike|enjoy)\b|\bmy favou?rite\b|"
                              r"\b(?:i am|i'm) (?:allergic|vegan|vegetarian)\b")),
    ('location', re.compile(r"\bi live in\b|\b(?:i am|i'm) (?:from|based in)\b|\bi moved to\b")),
    ('correction', re.compile(r"^actually\b|\bno longer\b|\b(?:i am|i'm) now\b|\bnot anymore\b|\bnow$")),
)


class FactExtractionError(Exception):
    """Custom exception for fact extraction errors."""
    pass


@dataclass
class ExtractedFact:
    """A durable statement a user made about themselves."""
    content: str
    topics: List[str] = field(default_factory=list)

    @property
    def is_correction(self) -> bool:
        return 'correction' in self.topics


class FactExtractor(ABC):

    @abstractmethod
    def extract(self, text: str) -> List[ExtractedFact]:
        """Return the facts stated in one user message."""


def _matchable(sentence: str) -> str:
    return sentence.lower().replace('’', "'").strip().rstrip('.!')


class HeuristicFactExtractor(FactExtractor):
    """Pattern-based classifier; no model calls."""

    def classify(self, sentence: str) -> List[str]:
        """
        Topics of a sentence, empty when it is not a fact.

        Args:
            sentence: One sentence of a user message

        Returns:
            Matched topic names in TOPICS order
        """
        text = _matchable(sentence)
        if not text or text.endswith('?') or _QUESTION.match(text):
            return []
        if _SMALL_TALK.match(text) or _COMMAND.match(text):
            return []
        return [topic for topic, pattern in _FACT_PATTERNS if pattern.search(text)]

    def extract(self, text):
        facts = []
        for sentence in split_sentences(text):
            topics = self.classify(sentence)
            if topics:
                facts.append(ExtractedFact(content=sentence.strip(), topics=topics))
        logger.debug(f'Heuristic extraction found {len(facts)} facts')
        return facts


class LLMFactExtractor(FactExtractor):
    """Fact extraction with a Bedrock model returning a JSON array."""

    SYSTEM_PROMPT = """
You are an expert at extracting durable personal facts from a shopper's chat message.

Extract only statements the user makes about themselves:
- Identity (name, how they want to be addressed)
- Occupation (job, employer, role)
- Preferences (likes, dislikes, favorites, dietary needs)
- Location (where they live or are from)
- Corrections (a change to something stated earlier)

Ignore questions, greetings, thanks and requests to search, browse or buy.

Return a JSON array with this exact format:
```json
[
  {
    "fact": "the user's statement, in their own words",
    "topics": ["identity|occupation|preference|location|correction"]
  }
]
```

Return empty array [] if the message states no facts."""

    def __init__(self, llm: BedrockLLM):
        self.llm = llm

    def extract(self, text):
        """
        Extract facts with one model call.

        Raises:
            FactExtractionError: If the model call fails
        """
        if not text or not text.strip():
            return []

        messages = [{
            'role': 'user',
            'content': [{
                'text': f'Extract facts from the message:\n{text}'
            }]
        }, {
            'role': 'assistant',
            'content': [{
                'text': '```json'
            }]
        }]

        try:
            response, _ = self.llm.generate_response(messages=messages,
                                                     system_prompt=self.SYSTEM_PROMPT,
                                                     temperature=0.0,
                                                     stop_sequences=['```'])
        except GenerationFailedError as e:
            logger.error(f'LLM error during fact extraction: {e}')
            raise FactExtractionError(f'Fact extraction failed: {e}')

        facts = []
        for fact_data in parse_json_list(response) or []:
            if not isinstance(fact_data, dict):
                continue
            content = str(fact_data.get('fact', '')).strip()
            topics = [str(topic).strip().lower() for topic in fact_data.get('topics') or []]
            topics = [topic for topic in topics if topic in TOPICS]
            if content:
                facts.append(ExtractedFact(content=content, topics=topics))

        logger.debug(f'LLM extraction found {len(facts)} facts')
        return facts


def create_fact_extractor(config: IngestionConfig, llm: Optional[BedrockLLM] = None) -> FactExtractor:
    """Pick the extractor named by ``INGESTION_EXTRACTION_MODE``."""
    if config.extraction_mode == 'llm':
        if llm is None:
            raise ValueError('LLM fact extraction requires a BedrockLLM client')
        return LLMFactExtractor(llm)
    if config.extraction_mode == 'heuristic':
        return HeuristicFactExtractor()
    raise ValueError(f'Unsupported extraction mode: {config.extraction_mode}')
