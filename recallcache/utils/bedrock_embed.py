"""
Amazon Bedrock embedding client wrapper with bounded retry and error handling.
"""

import json
import random
import time
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger
from .providers import EmbeddingProvider

logger = get_logger(__name__)


class EmbeddingUnavailableError(Exception):
    """The embedding provider could not produce a vector."""
    pass


class BedrockEmbed(EmbeddingProvider):
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        if 'cohere' in self.model_id.lower() and self.dimension != 1024:
            raise ValueError(f'Cohere models only support 1024 dimensions, got {self.dimension}')

        # Create Bedrock runtime client
        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with bounded retry.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            EmbeddingUnavailableError: If all retry attempts fail
        """
        body = json.dumps(data)
        attempts = max(1, self.config.retry_attempts)

        for attempt in range(attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{attempts}')

                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{attempts} failed: {e}')

                if attempt < attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, self.config.retry_delay)
                    time.sleep(delay)
                else:
                    raise EmbeddingUnavailableError(f'Bedrock Embed failed after {attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise EmbeddingUnavailableError(f'Unexpected Bedrock Embed error: {e}')

        raise EmbeddingUnavailableError(f'Bedrock Embed failed after {attempts} attempts')

    def _request(self, text: str, input_type: str) -> dict:
        if 'titan' in self.model_id.lower():
            return {'inputText': text, 'dimensions': self.dimension}
        if 'cohere' in self.model_id.lower():
            return {'input_type': input_type, 'texts': [text]}
        raise EmbeddingUnavailableError(f'Unsupported embedding model: {self.model_id}')

    def _extract(self, response: dict) -> List[float]:
        if 'titan' in self.model_id.lower():
            embedding = response.get('embedding')
        else:
            embeddings = response.get('embeddings') or []
            embedding = embeddings[0] if embeddings else None

        if not embedding:
            raise EmbeddingUnavailableError(f'Bedrock Embed returned no embedding for model {self.model_id}')
        if len(embedding) != self.dimension:
            raise EmbeddingUnavailableError(f'Bedrock Embed returned {len(embedding)} dimensions, expected {self.dimension}')
        return [float(value) for value in embedding]

    def embed(self, text: str, input_type: str = 'search_document') -> List[float]:
        """
        Generate an embedding for text.

        Args:
            text: Non-empty text to embed; callers truncate long input
            input_type: 'search_document' for stored content, 'search_query' for queries

        Returns:
            List of embedding values

        Raises:
            ValueError: If text is empty
            EmbeddingUnavailableError: If embedding generation fails
        """
        if not text or not text.strip():
            raise ValueError('Cannot embed empty text')

        return self._extract(self._call_with_retry(self._request(text, input_type)))

    def embed_query(self, text: str) -> List[float]:
        return self.embed(text, input_type='search_query')

    def embed_document(self, text: str) -> List[float]:
        return self.embed(text, input_type='search_document')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed_document('test')) == self.dimension

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
