"""
Query normalization, hashing and vector helpers.
"""

import hashlib
import math
import re
import string
import unicodedata
from typing import Any, List, Optional, Sequence

import numpy as np

from .errors import MalformedStoredVectorError

_WHITESPACE = re.compile(r'\s+')
_EDGE_PUNCTUATION = string.punctuation + '¿¡…“”‘’'
_SENTENCE_SPLIT = re.compile(r'(?<=[.!?])\s+|\n+')


def normalize_query(text: str) -> str:
    """Normalize text for hashing and substring matching.

    NFKC, lower-case, collapsed whitespace, leading/trailing punctuation removed,
    so ``"What is my favorite color?"`` and ``"what is my  favorite color"`` agree.
    """
    if not text:
        return ''
    normalized = unicodedata.normalize('NFKC', text).lower()
    normalized = _WHITESPACE.sub(' ', normalized).strip()
    return normalized.strip(_EDGE_PUNCTUATION + ' ')


def query_hash(normalized_query: str) -> str:
    """Deterministic SHA-256 hex digest of an already normalized query."""
    return hashlib.sha256(normalized_query.encode('utf-8')).hexdigest()


def split_sentences(text: str) -> List[str]:
    return [part.strip() for part in _SENTENCE_SPLIT.split(text or '') if part and part.strip()]


def validate_vector(vector: Any, dimension: Optional[int] = None) -> List[float]:
    """Check that a stored vector is a finite numeric list, optionally of a given length.

    Raises:
        MalformedStoredVectorError: If the vector cannot be used for similarity
    """
    if not isinstance(vector, (list, tuple)) or not vector:
        raise MalformedStoredVectorError(f'Expected a non-empty list of floats, got {type(vector).__name__}')
    if dimension is not None and len(vector) != dimension:
        raise MalformedStoredVectorError(f'Vector has {len(vector)} dimensions, expected {dimension}')
    values = []
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise MalformedStoredVectorError(f'Vector contains a non-finite or non-numeric value: {value!r}')
        values.append(float(value))
    return values


def cosine_similarity(query_vector: Sequence[float], item_vector: Any) -> float:
    """Cosine similarity in [-1, 1]; zero-norm vectors have similarity 0.0.

    ``item_vector`` is validated against the query dimensionality.

    Raises:
        MalformedStoredVectorError: If ``item_vector`` is malformed
    """
    item = np.asarray(validate_vector(item_vector, len(query_vector)), dtype=float)
    query = np.asarray(query_vector, dtype=float)
    denominator = np.linalg.norm(query) * np.linalg.norm(item)
    if denominator == 0.0:
        return 0.0
    return float(np.clip(np.dot(query, item) / denominator, -1.0, 1.0))


def chunk_text(text: str, max_chars: int) -> List[str]:
    """Split text into chunks of at most ``max_chars``, breaking between sentences where possible."""
    chunks = []
    current = ''
    for sentence in split_sentences(text):
        while len(sentence) > max_chars:
            if current:
                chunks.append(current)
                current = ''
            chunks.append(sentence[:max_chars].strip())
            sentence = sentence[max_chars:].strip()
        if not sentence:
            continue
        candidate = f'{current} {sentence}' if current else sentence
        if len(candidate) > max_chars:
            chunks.append(current)
            current = sentence
        else:
            current = candidate
    if current:
        chunks.append(current)
    return [chunk for chunk in chunks if chunk]
