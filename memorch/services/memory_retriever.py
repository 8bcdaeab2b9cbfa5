"""
Memory Retriever: scoped, concurrent fan-out search across an organization's collections.
"""

from concurrent.futures import ThreadPoolExecutor, wait
from typing import List, Optional, Tuple

from ..models.core import (CollectionKey, MemoryRecord, MemoryScope, MemoryType, OrgContext, OrgPolicies, RetrievalResult,
                           ScoredRecord, SearchFilter, UserContext)
from ..models.errors import EmbeddingFailure, IsolationViolation, VectorStoreError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import age_in_days, utc_now
from ..utils.vector_collections import VectorCollectionAdapter

logger = get_logger(__name__)

ORGANIZATION_VISIBLE_TYPES = (MemoryType.KNOWLEDGE, MemoryType.PROCEDURAL)


def plan_searches(user: UserContext) -> List[Tuple[MemoryType, SearchFilter]]:
    """Decide which collections to search and with which scope filter.

    Unregistered or unresolved callers only see organization-scoped knowledge and
    procedural memory; registered callers see both scopes in all four collections.
    """
    if not user.sees_user_scope:
        return [(memory_type, SearchFilter.organization_only()) for memory_type in ORGANIZATION_VISIBLE_TYPES]
    return [(memory_type, SearchFilter.for_user(user.user_id)) for memory_type in MemoryType]


def rank_score(record: MemoryRecord, score: float, policies: OrgPolicies, now=None) -> float:
    """Similarity plus a linearly decaying recency boost for episodic records."""
    if record.type != MemoryType.EPISODIC or policies.episodic_recency_window_days <= 0:
        return score
    freshness = max(0.0, 1.0 - age_in_days(record.updated_at, now) / policies.episodic_recency_window_days)
    return score + policies.episodic_recency_boost * freshness


def merge_results(partials: List[List[Tuple[MemoryRecord, float]]], policies: OrgPolicies, now=None) -> List[ScoredRecord]:
    """Single-threaded merge of per-collection results into one ranked, truncated list."""
    now = now or utc_now()
    merged = [
        ScoredRecord(record=record, score=score, rank_score=rank_score(record, score, policies, now)) for partial in partials
        for record, score in partial
    ]
    merged.sort(key=lambda item: (-item.rank_score, -item.record.updated_at.timestamp()))
    return merged[:policies.retrieval_total_limit]


class MemoryRetriever:
    """Embed a query and search every visible collection concurrently.

    Branches that time out or fail contribute nothing; the retrieval itself only
    fails on an isolation violation.
    """

    def __init__(self, embedder, vectors: VectorCollectionAdapter, max_workers: int = 4):
        self.embedder = embedder
        self.vectors = vectors
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='memorch-retrieval')
        logger.info(f'Initialized MemoryRetriever with {max_workers} workers')

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def retrieve(self, query_text: str, org: OrgContext, user: UserContext) -> RetrievalResult:
        """
        Retrieve memories relevant to a query under the caller's scope rules.

        Args:
            query_text: Text to search for
            org: Organization context (isolation root and retrieval policies)
            user: Caller identity and registration state

        Returns:
            RetrievalResult, possibly partial or empty

        Raises:
            IsolationViolation: If any branch touches another organization's data
        """
        result = RetrievalResult(org_id=org.org_id, query_text=query_text)
        if not query_text or not query_text.strip():
            return result

        try:
            query_embedding = self.embedder.embed(query_text)
        except EmbeddingFailure as e:
            logger.warning(f'Query embedding failed, continuing without memory context: {e}')
            result.failed = [memory_type for memory_type, _ in plan_searches(user)]
            return result

        plan = plan_searches(user)
        policies = org.policies
        # Fixed-size buffer, one slot per branch, filled concurrently and merged afterwards
        partials: List[Optional[List[Tuple[MemoryRecord, float]]]] = [None] * len(plan)
        futures = {
            self._executor.submit(self.vectors.search, CollectionKey(org.org_id, memory_type), query_embedding, search_filter,
                                  policies.retrieval_per_collection_top_k): index
            for index, (memory_type, search_filter) in enumerate(plan)
        }

        done, not_done = wait(futures, timeout=policies.retrieval_timeout_seconds)

        for future in not_done:
            future.cancel()
            memory_type = plan[futures[future]][0]
            logger.warning(f'Retrieval from {memory_type.value} collection timed out for org {org.org_id}')
            result.timed_out.append(memory_type)

        for future in done:
            index = futures[future]
            memory_type = plan[index][0]
            try:
                partials[index] = future.result()
            except IsolationViolation:
                raise
            except VectorStoreError as e:
                logger.warning(f'Retrieval from {memory_type.value} collection failed for org {org.org_id}: {e}')
                result.failed.append(memory_type)
            except Exception as e:
                logger.error(f'Unexpected error retrieving from {memory_type.value} collection for org {org.org_id}: {e}')
                result.failed.append(memory_type)

        for partial in partials:
            for record, _ in partial or []:
                if record.org_id != org.org_id or (record.scope == MemoryScope.USER and record.user_id != user.user_id):
                    raise IsolationViolation(f'Retrieval for {org.org_id} produced out-of-scope record {record.id}')

        result.records = merge_results([p for p in partials if p], policies)
        logger.debug(f'Retrieved {len(result.records)} memories for org {org.org_id} '
                     f'(timed out: {len(result.timed_out)}, failed: {len(result.failed)})')
        return result
