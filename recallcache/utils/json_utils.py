"""
JSON helpers for model output that should contain a JSON array.
"""

import json
from typing import Any, List, Optional

from .logging_config import get_logger

logger = get_logger(__name__)


def clean_json_response(response: str) -> str:
    """Strip markdown code fences around a JSON payload.

    Args:
        response: Raw model output

    Returns:
        The text between the fences, stripped
    """
    cleaned = response.strip()
    for fence in ('```json', '```'):
        if cleaned.startswith(fence):
            cleaned = cleaned[len(fence):]
            break
    if cleaned.endswith('```'):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_json_list(response: str) -> Optional[List[Any]]:
    """Parse model output as a JSON array; None when it is not one."""
    try:
        data = json.loads(clean_json_response(response))
    except json.JSONDecodeError as e:
        logger.error(f'Failed to parse JSON array from model output: {e}')
        return None
    if not isinstance(data, list):
        logger.warning(f'Expected a JSON array, got {type(data).__name__}')
        return None
    return data
