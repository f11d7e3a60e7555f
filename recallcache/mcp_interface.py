"""
MCP Interface Layer using fastmcp for the chat assistant backend.
"""
from typing import Any, Dict, List, Optional, Tuple

from fastmcp import FastMCP

from .models.core import ChatTurn, DocumentExcerpt
from .services.pipeline import build_pipeline
from .utils.bedrock_llm import GenerationFailedError
from .utils.config import config
from .utils.errors import RequestCancelledError, StoreError
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('RecallCache')
pipeline = build_pipeline(config)
pipeline.ingester.start()


def _excerpts(document_excerpts: Optional[List[Dict[str, str]]]) -> List[DocumentExcerpt]:
    excerpts = []
    for excerpt in document_excerpts or []:
        text = (excerpt.get('text') or '').strip()
        if text:
            excerpts.append(DocumentExcerpt(source=excerpt.get('source') or 'document', text=text))
    return excerpts


@mcp.tool()
def chat(user_id: str, message: str, document_excerpts: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
    """Answer a user's chat message with their personal context.

    Args:
        user_id: User ID
        message: The user's message
        document_excerpts: Optional list of {"source", "text"} excerpts sent with the message

    Returns:
        Dict with answer, sources, confidence and cacheHit

    Raises:
        Exception: If the answer cannot be produced
    """
    try:
        if not user_id or not user_id.strip():
            raise ValueError('User ID is required')

        turn = ChatTurn(user_id=user_id, text=message or '', prior_document_excerpts=_excerpts(document_excerpts))
        response = pipeline.coordinator.respond(turn)

        logger.debug(f'MCP chat answered user {user_id} (cache hit: {response.cache_hit})')
        return response.to_dict()

    except (GenerationFailedError, RequestCancelledError) as e:
        logger.error(f'Chat failed for user {user_id}: {e}')
        raise Exception(f'Chat failed: {e}')
    except ValueError as e:
        raise Exception(f'Invalid chat request: {e}')


@mcp.tool()
def search_knowledge(user_id: str, query: str, top_k: int = 6) -> List[Tuple[str, str, float]]:
    """Search a user's knowledge items.

    Args:
        user_id: User ID
        query: Natural language query
        top_k: Maximum number of results to return (default: 6)

    Returns:
        List of tuples (item_id, content, confidence)
    """
    try:
        if not user_id or not user_id.strip():
            raise ValueError('User ID is required')

        if not query or not query.strip():
            return []

        result = pipeline.retriever.retrieve(user_id, query, top_k=top_k)
        items = [(scored.item.id, scored.item.content, scored.confidence) for scored in result.context]

        logger.debug(f'MCP search returned {len(items)} items for user {user_id}')
        return items

    except StoreError as e:
        logger.error(f'Store error in MCP search: {e}')
        raise Exception(f'Knowledge search failed: {e}')


@mcp.tool()
def add_document_excerpt(user_id: str, source: str, text: str) -> List[str]:
    """Store a document excerpt in a user's knowledge.

    Args:
        user_id: User ID
        source: Document name shown as the answer source
        text: Extracted document text

    Returns:
        Ids of the stored chunks
    """
    try:
        if not user_id or not user_id.strip():
            raise ValueError('User ID is required')

        return pipeline.ingester.ingest_excerpts(user_id, _excerpts([{'source': source, 'text': text}]))

    except StoreError as e:
        logger.error(f'Store error adding document excerpt: {e}')
        raise Exception(f'Adding document excerpt failed: {e}')


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    try:
        mcp.run(transport=transport, host=host, port=port)
    finally:
        pipeline.shutdown()
