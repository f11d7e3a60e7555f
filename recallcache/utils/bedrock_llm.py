"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import random
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..models.core import ContextItem
from .config import BedrockLLMConfig
from .logging_config import get_logger
from .providers import GenerationProvider

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are a helpful AI assistant for an online store with access to a personalized knowledge base.

Keep responses concise and focused, 3-4 lines at most. Use markdown where it helps readability.
{context}
Use the knowledge base context above to provide accurate and personalized responses. If the context is relevant to the user's question, reference it naturally. If it conflicts, prefer the most recent statement."""


class GenerationFailedError(Exception):
    """The generation call failed or produced no answer."""
    pass


def format_context(context: Sequence[ContextItem]) -> str:
    if not context:
        return ''
    lines = '\n'.join(f'- {item.content}' for item in context)
    return f'\nRELEVANT KNOWLEDGE BASE CONTEXT:\n{lines}\n'


class BedrockLLM(GenerationProvider):
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=min(60, config.read_timeout),
                read_timeout=config.read_timeout,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def _read_stream(self, response: Dict[str, Any]) -> Tuple[str, Optional[Dict[str, Any]]]:
        """Concatenate streamed text deltas; the trailing metadata event carries usage and latency."""
        parts = []
        metrics = None
        for event in response.get('stream') or []:
            delta = event.get('contentBlockDelta')
            if delta:
                parts.append(delta['delta'].get('text', ''))
            metadata = event.get('metadata')
            if metadata:
                metrics = {**metadata.get('usage', {}), **metadata.get('metrics', {})}
        return ''.join(parts), metrics

    def _backoff(self, attempt: int) -> None:
        time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 1))

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Run one Converse call, retrying transient Bedrock failures.

        Args:
            messages: Conversation in Bedrock Converse format
            system_prompt: System prompt text
            max_tokens: Overrides the configured token limit
            temperature: Overrides the configured temperature
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            GenerationFailedError: If all retry attempts fail
        """
        attempts = max(1, self.config.retry_attempts)
        request = {
            'modelId': self.model_id,
            'messages': messages,
            'system': [{'text': system_prompt}],
            'inferenceConfig': {
                'maxTokens': max_tokens or self.config.max_tokens,
                'temperature': self.config.temperature if temperature is None else temperature,
                'stopSequences': stop_sequences or [],
            }
        }

        last_error = None
        for attempt in range(attempts):
            try:
                text, metrics = self._read_stream(self.bedrock_runtime.converse_stream(**request))
                logger.debug(f'Bedrock LLM answered in attempt {attempt + 1} ({len(text)} chars)')
                return text, metrics
            except (ClientError, BotoCoreError) as e:
                last_error = e
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt < attempts - 1:
                    self._backoff(attempt)
            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise GenerationFailedError(f'Unexpected Bedrock LLM error: {e}')

        raise GenerationFailedError(f'Bedrock LLM failed after {attempts} attempts: {last_error}')

    def generate(self, query: str, context: Sequence[ContextItem]) -> str:
        """
        Answer a user query with the retrieved context injected into the system prompt.

        Args:
            query: The user's message
            context: Ranked context items, possibly empty

        Returns:
            Answer text

        Raises:
            GenerationFailedError: If the call fails or the answer is empty
        """
        messages = [{'role': 'user', 'content': [{'text': query}]}]
        answer, _ = self.generate_response(messages=messages, system_prompt=SYSTEM_PROMPT.format(context=format_context(context)))
        answer = answer.strip()
        if not answer:
            raise GenerationFailedError('Bedrock LLM returned an empty answer')
        return answer

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = self.generate_response(messages=test_messages,
                                                 system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
