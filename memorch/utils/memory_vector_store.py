"""
In-process vector store backend with cosine k-NN search.

Used for local development (VECTOR_BACKEND=memory) and in tests. Exposes the
same backend surface as OpenSearchClient.
"""

import threading
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import CollectionKey, MemoryScope, SearchFilter
from .logging_config import get_logger
from .similarity import batch_cosine_similarity
from .timestamp_utils import parse_iso

logger = get_logger(__name__)


def _document_matches(document: Dict[str, Any], key: CollectionKey, search_filter: Optional[SearchFilter]) -> bool:
    if document.get('org_id') != key.org_id:
        return False
    if search_filter is None:
        return True
    scope = document.get('scope')
    if scope not in {s.value for s in search_filter.scopes}:
        return False
    if scope == MemoryScope.USER.value:
        return document.get('user_id') == search_filter.user_id
    return True


class InMemoryVectorStore:
    """Thread-safe dictionary-backed vector store, one collection per CollectionKey."""

    def __init__(self):
        self._collections: Dict[CollectionKey, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def ensure_collection(self, key: CollectionKey) -> None:
        with self._lock:
            self._collections.setdefault(key, {})

    def upsert_document(self, key: CollectionKey, document: Dict[str, Any]) -> None:
        with self._lock:
            self._collections.setdefault(key, {})[document['id']] = dict(document)
        logger.debug(f"Upserted document {document['id']} into {key}")

    def get_document(self, key: CollectionKey, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._collections.get(key, {}).get(doc_id)
            return dict(document) if document else None

    def search_documents(self, key: CollectionKey, query_vector: List[float], search_filter: Optional[SearchFilter],
                         top_k: int) -> List[Tuple[Dict[str, Any], float]]:
        with self._lock:
            candidates = [dict(doc) for doc in self._collections.get(key, {}).values() if _document_matches(doc, key, search_filter)]

        if not candidates:
            return []

        scores = batch_cosine_similarity(query_vector, [doc['embedding'] for doc in candidates])
        # Fresher document first on equal similarity, before the top_k cut
        ranked = sorted(zip(candidates, (float(s) for s in scores)),
                        key=lambda pair: (-pair[1], -parse_iso(pair[0].get('updated_at')).timestamp()))
        return ranked[:top_k]

    def delete_user_documents(self, key: CollectionKey, user_id: str) -> int:
        with self._lock:
            collection = self._collections.get(key, {})
            doomed = [
                doc_id for doc_id, doc in collection.items()
                if doc.get('scope') == MemoryScope.USER.value and doc.get('user_id') == user_id
            ]
            for doc_id in doomed:
                del collection[doc_id]
        return len(doomed)

    def health_check(self) -> bool:
        return True
