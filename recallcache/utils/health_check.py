"""
Health checks for the model services and the configured store backend.
"""

from typing import Any, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import AppConfig
from .logging_config import get_logger
from .opensearch_client import OpenSearchClient
from .sqlite_client import get_database

logger = get_logger(__name__)


def check_health(app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status(app_config)
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')

    return all_healthy


def _store_status(app_config: AppConfig) -> Dict[str, Any]:
    if app_config.store.backend == 'sqlite':
        return {
            'healthy': get_database(app_config.store.sqlite_path).health_check(),
            'service': 'SQLite',
            'path': app_config.store.sqlite_path
        }
    return {
        'healthy': OpenSearchClient(app_config.opensearch).health_check(),
        'service': 'Amazon OpenSearch',
        'endpoint': app_config.opensearch.endpoint
    }


def get_health_status(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    if app_config is None:
        from .config import config as app_config

    health_status = {}

    try:
        health_status['bedrock_llm'] = {
            'healthy': BedrockLLM(app_config.bedrock_llm).health_check(),
            'service': 'Amazon Bedrock LLM',
            'model': app_config.bedrock_llm.model_id
        }
    except Exception as e:
        health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    try:
        health_status['bedrock_embed'] = {
            'healthy': BedrockEmbed(app_config.bedrock_embed).health_check(),
            'service': 'Amazon Bedrock Embed',
            'model': app_config.bedrock_embed.model_id
        }
    except Exception as e:
        health_status['bedrock_embed'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}

    try:
        health_status['store'] = _store_status(app_config)
    except Exception as e:
        health_status['store'] = {'healthy': False, 'service': app_config.store.backend, 'error': str(e)}

    return health_status
