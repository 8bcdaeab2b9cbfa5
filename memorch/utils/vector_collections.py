"""
Vector Collection Adapter: tenant-isolated CRUD and k-NN search over memory collections.
"""

from typing import List, Optional, Tuple

from ..models.core import CollectionKey, MemoryRecord, MemoryType, SearchFilter
from ..models.errors import IsolationViolation
from .config import AppConfig
from .logging_config import get_logger, log_security_event
from .search_cache import SearchCache, query_hash

logger = get_logger(__name__)


def _ranking_key(pair: Tuple[MemoryRecord, float]):
    record, score = pair
    # Higher similarity first, fresher record first on ties
    return (-score, -record.updated_at.timestamp())


class VectorCollectionAdapter:
    """Isolation-enforcing facade over a vector store backend.

    Every operation is addressed by a CollectionKey and refused with
    IsolationViolation when the key lacks an org_id or a record or search hit
    belongs to a different organization.
    """

    def __init__(self, backend, cache: Optional[SearchCache] = None):
        """
        Args:
            backend: OpenSearchClient or InMemoryVectorStore
            cache: Optional read-through search cache
        """
        self.backend = backend
        self.cache = cache

    def _require_org(self, key: CollectionKey, operation: str) -> None:
        if not key.org_id or not str(key.org_id).strip():
            log_security_event('isolation_violation', operation=operation, reason='missing org_id', memory_type=key.memory_type.value)
            raise IsolationViolation(f'{operation} refused: collection key has no org_id')

    def _check_record(self, key: CollectionKey, record: MemoryRecord, operation: str) -> None:
        if record.org_id != key.org_id:
            log_security_event('isolation_violation',
                               operation=operation,
                               collection_org=key.org_id,
                               record_org=record.org_id,
                               record_id=record.id)
            raise IsolationViolation(f'{operation} refused: record {record.id} belongs to another organization')
        if record.type != key.memory_type:
            raise ValueError(f'Record {record.id} of type {record.type.value} cannot be stored in {key}')

    def upsert(self, key: CollectionKey, record: MemoryRecord) -> None:
        """
        Insert or replace a record in its collection.

        Args:
            key: Target collection
            record: Record whose org_id and type must match the key

        Raises:
            IsolationViolation: On missing or mismatched org_id
        """
        self._require_org(key, 'upsert')
        self._check_record(key, record, 'upsert')

        self.backend.upsert_document(key, record.to_document())
        if self.cache is not None:
            self.cache.invalidate(key)
        logger.debug(f'Upserted {record.type.value} record {record.id} into {key}')

    def get(self, key: CollectionKey, record_id: str) -> Optional[MemoryRecord]:
        """Fetch one record by id, or None."""
        self._require_org(key, 'get')
        document = self.backend.get_document(key, record_id)
        if document is None:
            return None
        record = MemoryRecord.from_document(document)
        self._check_record(key, record, 'get')
        return record

    def search(self,
               key: CollectionKey,
               query_embedding: List[float],
               search_filter: Optional[SearchFilter] = None,
               top_k: int = 10) -> List[Tuple[MemoryRecord, float]]:
        """
        Rank a collection's records by similarity to a query embedding.

        Args:
            key: Collection to search
            query_embedding: Query vector
            search_filter: Scope/user restriction, None for no restriction
            top_k: Maximum number of results

        Returns:
            List of (record, cosine similarity), best first, fresher first on ties

        Raises:
            IsolationViolation: On missing org_id or a foreign record in the results
        """
        self._require_org(key, 'search')
        if top_k <= 0:
            return []

        digest = None
        generation = None
        if self.cache is not None:
            digest = query_hash(query_embedding, search_filter, top_k)
            generation = self.cache.generation(key)
            cached = self.cache.get(key, digest)
            if cached is not None:
                logger.debug(f'Search cache hit for {key}')
                return cached

        results = []
        for document, score in self.backend.search_documents(key, query_embedding, search_filter, top_k):
            record = MemoryRecord.from_document(document)
            self._check_record(key, record, 'search')
            if search_filter is not None and not search_filter.matches(record):
                logger.warning(f'Backend returned record {record.id} outside the requested scope, discarding')
                continue
            results.append((record, score))

        results.sort(key=_ranking_key)
        results = results[:top_k]

        if self.cache is not None:
            if not self.cache.put(key, digest, results, generation):
                logger.debug(f'{key} changed during search, result not cached')
        return results

    def delete_user_records(self, org_id: str, user_id: str) -> int:
        """
        Remove every user-scoped record of a user across the organization's collections.

        Returns:
            Number of records removed
        """
        if not user_id:
            raise ValueError('user_id is required to delete user records')

        deleted = 0
        for memory_type in MemoryType:
            key = CollectionKey(org_id, memory_type)
            self._require_org(key, 'delete_user_records')
            deleted += self.backend.delete_user_documents(key, user_id)
            if self.cache is not None:
                self.cache.invalidate(key)

        logger.info(f'Deleted {deleted} records for user {user_id} in organization {org_id}')
        return deleted

    def health_check(self) -> bool:
        return self.backend.health_check()


def build_vector_adapter(app_config: AppConfig) -> VectorCollectionAdapter:
    """Construct the adapter for the configured backend."""
    cache = SearchCache(app_config.retrieval.cache_ttl_seconds) if app_config.retrieval.cache_enabled else None

    if app_config.vector_backend == 'memory':
        from .memory_vector_store import InMemoryVectorStore
        return VectorCollectionAdapter(InMemoryVectorStore(), cache=cache)

    from .opensearch_client import OpenSearchClient
    return VectorCollectionAdapter(OpenSearchClient(app_config.opensearch), cache=cache)
