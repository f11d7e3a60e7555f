"""
Error taxonomy shared by the stores, the retriever and the coordinator.

Provider errors live next to their clients (``EmbeddingUnavailableError`` in
``bedrock_embed``, ``GenerationFailedError`` in ``bedrock_llm``).
"""


class StoreError(Exception):
    """Base exception for durable store backend failures."""
    pass


class UserScopeViolationError(Exception):
    """A store operation was attempted without a user scope, or returned data of another user.

    This is a programming error; callers must not recover from it.
    """
    pass


class MalformedStoredVectorError(Exception):
    """A stored embedding could not be decoded or compared with the query vector."""
    pass


class CacheWriteConflictError(StoreError):
    """A concurrent writer updated the same cache entry; resolved inside the cache."""
    pass


class RequestCancelledError(Exception):
    """The caller abandoned the request while the answer was being generated."""
    pass


def require_user_id(user_id) -> str:
    """Return ``user_id`` or fail closed when it cannot scope a query.

    Raises:
        UserScopeViolationError: If user_id is missing or blank
    """
    if not isinstance(user_id, str) or not user_id.strip():
        raise UserScopeViolationError(f'Operation requires a user scope, got {user_id!r}')
    return user_id
