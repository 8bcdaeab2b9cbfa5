"""
OpenSearch client wrapper for per-(organization, memory type) vector collections.
"""

import hashlib
import re
from typing import Any, Dict, List, Optional, Set, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import CollectionKey, MemoryScope, SearchFilter
from ..models.errors import VectorStoreError
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

DELETE_BATCH_SIZE = 500


class OpenSearchError(VectorStoreError):
    """Custom exception for OpenSearch errors."""
    pass


def cosine_from_score(score: float) -> float:
    """Convert a lucene `cosinesimil` k-NN score back to cosine similarity.

    The lucene engine reports (1 + cos) / 2 for the cosinesimil space.
    """
    return max(-1.0, min(1.0, 2.0 * score - 1.0))


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config
        self._known_indexes: Set[str] = set()

        # Get AWS credentials and create auth
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, key: CollectionKey) -> str:
        """Derive a valid, collision-free index name for a collection key.

        The readable slug is lossy, so a digest of the exact org_id is appended.
        """
        slug = re.sub(r'[^a-z0-9_-]+', '-', key.org_id.lower()).strip('-_')[:40] or 'org'
        digest = hashlib.sha256(key.org_id.encode('utf-8')).hexdigest()[:12]
        return f'{self.config.index_prefix}-{slug}-{digest}-{key.memory_type.value}'

    def ensure_collection(self, key: CollectionKey) -> None:
        """
        Create the collection's index if it doesn't exist.

        Args:
            key: Collection to create
        """
        index_name = self.index_name(key)
        if index_name in self._known_indexes:
            return

        index_body = {
            'mappings': {
                'properties': {
                    'id': {
                        'type': 'keyword'
                    },
                    'org_id': {
                        'type': 'keyword'
                    },
                    'memory_type': {
                        'type': 'keyword'
                    },
                    'scope': {
                        'type': 'keyword'
                    },
                    'user_id': {
                        'type': 'keyword'
                    },
                    'text': {
                        'type': 'text'
                    },
                    'confidence': {
                        'type': 'float'
                    },
                    'source_thread_id': {
                        'type': 'keyword'
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.config.dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'lucene'
                        }
                    },
                    'created_at': {
                        'type': 'date'
                    },
                    'updated_at': {
                        'type': 'date'
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True
                }
            }
        }

        try:
            if not self.client.indices.exists(index=index_name):
                self.client.indices.create(index=index_name, body=index_body)
                logger.info(f'Created index {index_name} for collection {key}')
            self._known_indexes.add(index_name)
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def upsert_document(self, key: CollectionKey, document: Dict[str, Any]) -> None:
        """
        Index a document under its record id, replacing any previous version.

        Args:
            key: Target collection
            document: Record document including embedding
        """
        self.ensure_collection(key)
        index_name = self.index_name(key)

        try:
            response = self.client.index(index=index_name, id=document['id'], body=document)
            if response.get('result') not in ['created', 'updated']:
                logger.warning(f'Unexpected result indexing document: {response}')
                raise OpenSearchError(f"Indexing document {document['id']} returned {response.get('result')}")
            logger.debug(f"Indexed document {document['id']} in {index_name}")

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def get_document(self, key: CollectionKey, doc_id: str) -> Optional[Dict[str, Any]]:
        """
        Get a specific document by id.

        Returns:
            Document source if found, None otherwise
        """
        try:
            response = self.client.get(index=self.index_name(key), id=doc_id)
            return response.get('_source') if response.get('found') else None

        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id} from {key}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')

    def _filter_clauses(self, key: CollectionKey, search_filter: Optional[SearchFilter]) -> List[Dict[str, Any]]:
        clauses: List[Dict[str, Any]] = [{'term': {'org_id': key.org_id}}]
        if search_filter is None:
            return clauses

        scope_options = []
        for scope in search_filter.scopes:
            if scope == MemoryScope.USER:
                scope_options.append({
                    'bool': {
                        'filter': [{
                            'term': {
                                'scope': MemoryScope.USER.value
                            }
                        }, {
                            'term': {
                                'user_id': search_filter.user_id
                            }
                        }]
                    }
                })
            else:
                scope_options.append({'term': {'scope': scope.value}})
        clauses.append({'bool': {'should': scope_options, 'minimum_should_match': 1}})
        return clauses

    def search_documents(self, key: CollectionKey, query_vector: List[float], search_filter: Optional[SearchFilter],
                         top_k: int) -> List[Tuple[Dict[str, Any], float]]:
        """
        Perform filtered vector similarity search.

        Args:
            key: Collection to search
            query_vector: Query vector for similarity search
            search_filter: Scope/user restriction
            top_k: Number of results to return

        Returns:
            List of (document, cosine similarity) pairs, fresher first on equal score
        """
        index_name = self.index_name(key)
        # Filter inside the knn clause so neighbours are picked among matching documents only
        search_body = {
            'size': top_k,
            'track_scores': True,
            'sort': [{
                '_score': {
                    'order': 'desc'
                }
            }, {
                'updated_at': {
                    'order': 'desc'
                }
            }],
            'query': {
                'knn': {
                    'embedding': {
                        'vector': query_vector,
                        'k': top_k,
                        'filter': {
                            'bool': {
                                'filter': self._filter_clauses(key, search_filter)
                            }
                        }
                    }
                }
            }
        }

        try:
            response = self.client.search(index=index_name, body=search_body)

        except NotFoundError:
            logger.debug(f'Index {index_name} does not exist yet, returning no results')
            return []
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

        results = [(hit['_source'], cosine_from_score(hit['_score'])) for hit in response['hits']['hits']]
        logger.debug(f'Vector search returned {len(results)} results from {key}')
        return results

    def delete_user_documents(self, key: CollectionKey, user_id: str) -> int:
        """
        Delete every user-scoped document belonging to `user_id` in a collection.

        Returns:
            Number of documents deleted
        """
        index_name = self.index_name(key)
        query = {
            'size': DELETE_BATCH_SIZE,
            '_source': False,
            'query': {
                'bool': {
                    'filter': [{
                        'term': {
                            'org_id': key.org_id
                        }
                    }, {
                        'term': {
                            'scope': MemoryScope.USER.value
                        }
                    }, {
                        'term': {
                            'user_id': user_id
                        }
                    }]
                }
            }
        }

        deleted = 0
        # Deletes are not visible to search until the next refresh
        removed: Set[str] = set()
        try:
            while True:
                hits = self.client.search(index=index_name, body=query)['hits']['hits']
                fresh = [hit['_id'] for hit in hits if hit['_id'] not in removed]
                if not fresh:
                    break
                for doc_id in fresh:
                    self.client.delete(index=index_name, id=doc_id)
                    removed.add(doc_id)
                    deleted += 1
                if len(hits) < DELETE_BATCH_SIZE:
                    break

        except NotFoundError:
            return deleted
        except OpenSearchException as e:
            logger.error(f'Error deleting documents for user {user_id} in {key}: {e}')
            raise OpenSearchError(f'Failed to delete user documents: {e}')

        logger.debug(f'Deleted {deleted} documents for user {user_id} from {index_name}')
        return deleted

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=f'{self.config.index_prefix}-health')

            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
