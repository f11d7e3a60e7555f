"""
OpenSearch client wrapper for user-scoped vector and keyword search.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConflictError, NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .errors import CacheWriteConflictError, StoreError, UserScopeViolationError, require_user_id
from .logging_config import get_logger

logger = get_logger(__name__)

KNOWLEDGE_INDEX = 'knowledge'
CACHE_INDEX = 'cache'


class OpenSearchError(StoreError):
    """Custom exception for OpenSearch errors."""
    pass


def _knn_field(dimension: int) -> Dict[str, Any]:
    return {
        'type': 'knn_vector',
        'dimension': dimension,
        'method': {
            'name': 'hnsw',
            'space_type': 'cosinesimil',
            'engine': 'nmslib'
        }
    }


class OpenSearchClient:
    """OpenSearch client with AWS authentication, error handling and user scoping.

    Every search goes through ``_scoped_query`` so the ``user_id`` term filter is part
    of the query itself; returned hits are checked against the requested user.
    """

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Optional pre-built opensearch-py client
        """
        self.config = config

        if client is None:
            # Get AWS credentials and create auth
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                # Remove protocol if present
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, index_type: str) -> str:
        return f'{self.config.index_name}_{index_type}'

    def create_index_if_not_exists(self, index_type: str = KNOWLEDGE_INDEX) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_type: Type of index (knowledge or cache)

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            if index_type == KNOWLEDGE_INDEX:
                properties = {
                    'id': {'type': 'keyword'},
                    'user_id': {'type': 'keyword'},
                    'content': {'type': 'text'},
                    'content_type': {'type': 'keyword'},
                    'topics': {'type': 'keyword'},
                    'metadata': {'type': 'object', 'enabled': False},
                    'embedding': _knn_field(self.config.dimension),
                    'created_at': {'type': 'date'}
                }
            else:  # cache index
                properties = {
                    'id': {'type': 'keyword'},
                    'user_id': {'type': 'keyword'},
                    'query_hash': {'type': 'keyword'},
                    'query_embedding': _knn_field(self.config.dimension),
                    'cached_response': {'type': 'object', 'enabled': False},
                    'hit_count': {'type': 'integer'},
                    'created_at': {'type': 'date'},
                    'last_hit': {'type': 'date'},
                    'expires_at': {'type': 'date'}
                }

            index_body = {
                'mappings': {'properties': properties},
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

            response = self.client.indices.create(index=index_name, body=index_body)
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                logger.info(f'Waiting 15s for index {index_name} sync-up...')
                time.sleep(15)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def _scoped_query(self, user_id: str, must: Optional[List[Dict]] = None, filters: Optional[List[Dict]] = None) -> Dict:
        require_user_id(user_id)
        return {
            'bool': {
                'must': must or [{'match_all': {}}],
                'filter': [{'term': {'user_id': user_id}}] + list(filters or [])
            }
        }

    def _scoped_hits(self, response: Dict, user_id: str) -> List[Dict[str, Any]]:
        results = []
        for hit in response['hits']['hits']:
            source = hit.get('_source', {})
            if source.get('user_id') != user_id:
                # Fail closed rather than leak another user's document
                raise UserScopeViolationError(f'Search for user {user_id} returned a document of another user')
            results.append({'id': hit['_id'], 'score': hit.get('_score'), 'sort': hit.get('sort'), 'document': source})
        return results

    def _search(self, index_type: str, user_id: str, body: Dict) -> List[Dict[str, Any]]:
        index_name = self.index_name(index_type)
        try:
            response = self.client.search(index=index_name, body=body)
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Search failed: {e}')
        results = self._scoped_hits(response, user_id)
        logger.debug(f'Search on {index_name} returned {len(results)} results for user {user_id}')
        return results

    def index_document(self, document: Dict[str, Any], doc_id: str, index_type: str = KNOWLEDGE_INDEX) -> bool:
        """
        Index a document in OpenSearch.

        Args:
            document: Document to index
            doc_id: Document ID
            index_type: Type of index (knowledge or cache)

        Returns:
            True if indexing was successful, False otherwise
        """
        require_user_id(document.get('user_id'))
        index_name = self.index_name(index_type)

        try:
            response = self.client.index(index=index_name, id=doc_id, body=document)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document {doc_id} in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')

            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def get_document(self, doc_id: str, index_type: str = CACHE_INDEX) -> Optional[Dict[str, Any]]:
        """
        Get a document by id.

        Returns:
            Document source if found, None otherwise
        """
        index_name = self.index_name(index_type)
        try:
            response = self.client.get(index=index_name, id=doc_id)
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')
        if not response.get('found', False):
            return None
        return response['_source']

    def upsert_document(self,
                        doc_id: str,
                        doc: Dict[str, Any],
                        upsert: Dict[str, Any],
                        index_type: str = CACHE_INDEX,
                        retry_on_conflict: int = 3) -> str:
        """
        Update ``doc_id`` with ``doc``, or create it from ``upsert`` if it does not exist.

        Returns:
            The OpenSearch result ('created', 'updated' or 'noop')

        Raises:
            CacheWriteConflictError: If concurrent writers exhausted retry_on_conflict
        """
        require_user_id(upsert.get('user_id'))
        index_name = self.index_name(index_type)
        try:
            response = self.client.update(index=index_name,
                                          id=doc_id,
                                          body={'doc': doc, 'upsert': upsert},
                                          retry_on_conflict=retry_on_conflict)
            return response.get('result', 'noop')
        except ConflictError as e:
            raise CacheWriteConflictError(f'Concurrent update of {doc_id}: {e}')
        except OpenSearchException as e:
            logger.error(f'Error upserting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to upsert document: {e}')

    def update_with_script(self,
                           doc_id: str,
                           source: str,
                           params: Dict[str, Any],
                           index_type: str = CACHE_INDEX,
                           retry_on_conflict: int = 5) -> bool:
        """
        Apply a painless script to one document atomically.

        Returns:
            True if updated, False if the document does not exist
        """
        index_name = self.index_name(index_type)
        try:
            self.client.update(index=index_name,
                               id=doc_id,
                               body={'script': {'source': source, 'lang': 'painless', 'params': params}},
                               retry_on_conflict=retry_on_conflict)
            return True
        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for scripted update')
            return False
        except OpenSearchException as e:
            logger.error(f'Error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}')

    def vector_search(self,
                      query_vector: List[float],
                      user_id: str,
                      top_k: int = 20,
                      index_type: str = KNOWLEDGE_INDEX,
                      field: str = 'embedding',
                      filters: Optional[List[Dict]] = None) -> List[Dict[str, Any]]:
        """
        Perform vector similarity search within one user's documents.

        Args:
            query_vector: Query vector for similarity search
            user_id: User ID to filter results
            top_k: Number of results to return
            index_type: Type of index (knowledge or cache)
            field: knn_vector field to search
            filters: Extra filter clauses

        Returns:
            List of search results with scores and documents (including vectors)
        """
        knn = {'knn': {field: {'vector': query_vector, 'k': top_k}}}
        body = {'size': top_k, 'query': self._scoped_query(user_id, must=[knn], filters=filters)}
        return self._search(index_type, user_id, body)

    def keyword_search(self,
                       query_text: str,
                       user_id: str,
                       top_k: int = 20,
                       index_type: str = KNOWLEDGE_INDEX,
                       phrase: bool = False) -> List[Dict[str, Any]]:
        """Perform keyword-based text search on item content within one user's documents.

        Args:
            query_text: Text query for keyword search
            user_id: User ID to filter results
            top_k: Number of results to return
            index_type: Type of index
            phrase: Require the words in order (match_phrase)

        Returns:
            List of search results with scores and documents
        """
        clause = {'match_phrase' if phrase else 'match': {'content': query_text}}
        body = {'size': top_k, 'query': self._scoped_query(user_id, must=[clause])}
        return self._search(index_type, user_id, body)

    def filtered_search(self,
                        user_id: str,
                        filters: Optional[List[Dict]] = None,
                        top_k: int = 100,
                        index_type: str = KNOWLEDGE_INDEX,
                        sort: Optional[List[Dict]] = None,
                        search_after: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """List one user's documents matching filter clauses, newest first by default.

        Pass the last hit's sort values as search_after to page.
        """
        body = {
            'size': top_k,
            'query': self._scoped_query(user_id, filters=filters),
            'sort': sort or [{'created_at': {'order': 'desc'}}, {'id': {'order': 'desc'}}]
        }
        if search_after:
            body['search_after'] = search_after
        return self._search(index_type, user_id, body)

    def count(self, user_id: Optional[str] = None, index_type: str = KNOWLEDGE_INDEX, filters: Optional[List[Dict]] = None) -> int:
        """Count documents, scoped to a user when given."""
        index_name = self.index_name(index_type)
        if user_id is not None:
            query = self._scoped_query(user_id, filters=filters)
        else:
            query = {'bool': {'filter': list(filters or [])}}
        try:
            return int(self.client.count(index=index_name, body={'query': query})['count'])
        except OpenSearchException as e:
            logger.error(f'Error counting documents in {index_name}: {e}')
            raise OpenSearchError(f'Count failed: {e}')

    def aggregate(self, index_type: str, aggs: Dict[str, Any], user_id: Optional[str] = None, filters: Optional[List[Dict]] = None) -> Dict[str, Any]:
        """Run aggregations over documents, scoped to a user when given."""
        index_name = self.index_name(index_type)
        if user_id is not None:
            query = self._scoped_query(user_id, filters=filters)
        else:
            query = {'bool': {'filter': list(filters or [])}}
        try:
            response = self.client.search(index=index_name, body={'size': 0, 'query': query, 'aggs': aggs})
            return response.get('aggregations', {})
        except OpenSearchException as e:
            logger.error(f'Error aggregating {index_name}: {e}')
            raise OpenSearchError(f'Aggregation failed: {e}')

    def delete_by_query(self, index_type: str, user_id: Optional[str] = None, filters: Optional[List[Dict]] = None) -> int:
        """
        Delete documents matching filters, scoped to a user when given.

        Returns:
            Number of deleted documents
        """
        index_name = self.index_name(index_type)
        if user_id is not None:
            query = self._scoped_query(user_id, filters=filters)
        elif filters:
            query = {'bool': {'filter': list(filters)}}
        else:
            raise ValueError('delete_by_query requires a user scope or filters')
        try:
            response = self.client.delete_by_query(index=index_name, body={'query': query}, conflicts='proceed')
            return int(response.get('deleted', 0))
        except OpenSearchException as e:
            logger.error(f'Error deleting documents from {index_name}: {e}')
            raise OpenSearchError(f'Delete failed: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name(KNOWLEDGE_INDEX))

            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
