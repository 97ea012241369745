"""
OpenSearch client wrapper for fact embedding records and k-NN search.
"""

import time
from functools import wraps
from typing import Any, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError
from opensearchpy.exceptions import NotFoundError, OpenSearchException, TransportError
from requests_aws4auth import AWS4Auth

from ..exceptions import StoreUnavailable
from .bedrock_llm import backoff_delay
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

_RETRYABLE_STATUS = (429, 502, 503, 504)


class OpenSearchError(StoreUnavailable):
    """OpenSearch failure surfaced after retries."""
    pass


def _is_transient(error: Exception) -> bool:
    if isinstance(error, OpenSearchConnectionError):
        return True
    return isinstance(error, TransportError) and error.status_code in _RETRYABLE_STATUS


def retry_on_transient_error(func):
    """Retry OpenSearch calls on connection loss, timeouts and throttling."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        attempts = self.config.retry_attempts
        for attempt in range(attempts):
            try:
                return func(self, *args, **kwargs)
            except OpenSearchException as e:
                if not _is_transient(e) or attempt == attempts - 1:
                    logger.error(f'Error in {func.__name__}: {e}')
                    raise OpenSearchError(f'Failed to {func.__name__}: {e}', {'attempt': attempt + 1})
                logger.warning(f'OpenSearch {func.__name__} attempt {attempt + 1}/{attempts} failed: {e}')
                time.sleep(backoff_delay(self.config.retry_delay, attempt))
        raise OpenSearchError(f'Failed to {func.__name__} after {attempts} attempts')

    return wrapper


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[Any] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Optional pre-built OpenSearch client
        """
        self.config = config
        self.index_name = f'{config.index_name}_facts'

        if client is None:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                timeout=config.timeout,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    @retry_on_transient_error
    def create_index_if_not_exists(self) -> str:
        """
        Create the fact embedding index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        if self.client.indices.exists(index=self.index_name):
            logger.debug(f'Index {self.index_name} already exists')
            return 'exists'

        index_body = {
            'mappings': {
                'properties': {
                    'fact_id': {
                        'type': 'keyword'
                    },
                    'scope': {
                        'type': 'keyword'
                    },
                    'status': {
                        'type': 'keyword'
                    },
                    'statement': {
                        'type': 'text'
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.config.dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            # lucene applies the scope/status filter during the graph search
                            'engine': 'lucene'
                        }
                    },
                    'created_at': {
                        'type': 'long'
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True,
                    'knn.algo_param.ef_search': 100
                }
            }
        }

        response = self.client.indices.create(index=self.index_name, body=index_body)
        if response.get('acknowledged', False):
            logger.info(f'Created index {self.index_name}')
            return 'created'
        logger.warning(f'Index creation not acknowledged for {self.index_name}: {response}')
        return 'failed'

    @retry_on_transient_error
    def upsert_embedding(self,
                         fact_id: str,
                         scope: str,
                         vector: List[float],
                         statement: str,
                         created_at: int,
                         status: str = 'active') -> bool:
        """
        Write the embedding record of a fact, keyed by fact id.

        Args:
            fact_id: Fact id, also used as document id
            scope: Scope tag
            vector: Embedding of the fact statement
            statement: Natural-language rendering of the fact
            created_at: Fact creation time in epoch milliseconds
            status: Fact status, used as a search filter

        Returns:
            True if the document was created or updated
        """
        document = {
            'fact_id': fact_id,
            'scope': scope,
            'status': status,
            'statement': statement,
            'embedding': vector,
            'created_at': created_at,
        }
        response = self.client.index(index=self.index_name, id=fact_id, body=document)

        success = response.get('result') in ['created', 'updated']
        if success:
            logger.debug(f'Indexed embedding for fact {fact_id} ({status})')
        else:
            logger.warning(f'Unexpected result indexing embedding for fact {fact_id}: {response}')
        return success

    @retry_on_transient_error
    def vector_search(self, scope: str, query_vector: List[float], top_k: int, status: str = 'active') -> List[Tuple[str, float]]:
        """
        Perform k-NN similarity search within one scope.

        The scope and status filter is applied inside the k-NN search, so the k
        nearest neighbours are taken from the matching documents only.

        Args:
            scope: Scope tag to filter results
            query_vector: Query vector for similarity search
            top_k: Number of results to return
            status: Fact status to match

        Returns:
            List of (fact_id, raw OpenSearch score) ordered by score; empty when the index is missing
        """
        search_body = {
            'size': top_k,
            'query': {
                'knn': {
                    'embedding': {
                        'vector': query_vector,
                        'k': top_k,
                        'filter': {
                            'bool': {
                                'filter': [{
                                    'term': {
                                        'scope': scope
                                    }
                                }, {
                                    'term': {
                                        'status': status
                                    }
                                }]
                            }
                        }
                    }
                }
            },
            '_source': ['fact_id', 'scope', 'status']
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except NotFoundError:
            logger.debug(f'Index {self.index_name} not found, treating as empty')
            return []

        results = []
        for hit in response['hits']['hits']:
            source = hit.get('_source', {})
            if source.get('scope') != scope or source.get('status', status) != status:
                continue
            results.append((source.get('fact_id') or hit['_id'], float(hit['_score'])))

        logger.debug(f'Vector search returned {len(results)} results for scope {scope}')
        return results

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return bool(self.client.ping())
        except OpenSearchException as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
