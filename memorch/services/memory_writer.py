"""
Memory Writer: embeds candidate memories and merges or inserts them into tenant collections.
"""

import dataclasses
import threading
import uuid
from typing import Dict, List, Optional

from ..models.core import (CandidateMemory, CollectionKey, MatchKind, MemoryRecord, MemoryType, OrgContext, SearchFilter)
from ..models.errors import EmbeddingFailure, IsolationViolation, VectorStoreError
from ..utils.logging_config import get_logger, log_security_event
from ..utils.timestamp_utils import utc_now
from ..utils.vector_collections import VectorCollectionAdapter

logger = get_logger(__name__)


class MemoryWriter:
    """Write candidates as MemoryRecords, merging refinements of existing semantic facts.

    A candidate whose embedding fails is parked and retried once on the next
    write for the same organization; a second failure drops it with a warning.
    """

    def __init__(self, embedder, vectors: VectorCollectionAdapter, pattern_store=None):
        """
        Args:
            embedder: Embedding provider exposing `embed(text) -> List[float]`
            vectors: Vector collection adapter
            pattern_store: Optional TriggerPatternStore reinforced by procedural records
        """
        self.embedder = embedder
        self.vectors = vectors
        self.pattern_store = pattern_store
        self._pending: Dict[str, List[CandidateMemory]] = {}
        self._lock = threading.Lock()
        logger.info('Initialized MemoryWriter')

    def pending_retries(self, org_id: str) -> List[CandidateMemory]:
        with self._lock:
            return list(self._pending.get(org_id, []))

    def _take_pending(self, org_id: str) -> List[CandidateMemory]:
        with self._lock:
            return self._pending.pop(org_id, [])

    def _park(self, candidate: CandidateMemory) -> None:
        with self._lock:
            self._pending.setdefault(candidate.org_id, []).append(candidate)

    def write(self, candidates: List[CandidateMemory], org: OrgContext) -> List[MemoryRecord]:
        """
        Embed and store candidates for one organization.

        Args:
            candidates: Classifier output for `org`
            org: Organization context carrying the merge threshold

        Returns:
            Records inserted or updated by this call

        Raises:
            IsolationViolation: If a candidate belongs to another organization
        """
        for candidate in candidates:
            if candidate.org_id != org.org_id:
                log_security_event('isolation_violation',
                                   operation='write',
                                   context_org=org.org_id,
                                   candidate_org=candidate.org_id)
                raise IsolationViolation(f'Candidate for organization {candidate.org_id} written under {org.org_id}')

        batch = self._take_pending(org.org_id) + list(candidates)
        written = []

        for candidate in batch:
            try:
                embedding = self.embedder.embed(candidate.text)
            except EmbeddingFailure as e:
                if candidate.attempts == 0:
                    logger.warning(f'Embedding failed for {candidate.type.value} candidate, retrying next cycle: {e}')
                    self._park(dataclasses.replace(candidate, attempts=1))
                else:
                    logger.warning(f'Embedding failed again, dropping {candidate.type.value} candidate '
                                   f"'{candidate.text[:60]}': {e}")
                continue

            try:
                record = self._merge_or_insert(candidate, embedding, org)
            except VectorStoreError as e:
                logger.error(f'Failed to store {candidate.type.value} memory for org {org.org_id}: {e}')
                continue

            written.append(record)
            if record.type == MemoryType.PROCEDURAL and self.pattern_store is not None:
                self.pattern_store.ensure_pattern(org.org_id, record.text, MatchKind.PROBABILISTIC)

        logger.debug(f'Wrote {len(written)} of {len(batch)} candidates for org {org.org_id}')
        return written

    def _find_merge_target(self, key: CollectionKey, candidate: CandidateMemory, embedding: List[float],
                           threshold: float) -> Optional[MemoryRecord]:
        search_filter = SearchFilter(scopes=(candidate.scope, ), user_id=candidate.user_id)
        hits = self.vectors.search(key, embedding, search_filter, top_k=1)
        if hits and hits[0][1] >= threshold:
            return hits[0][0]
        return None

    def _merge_or_insert(self, candidate: CandidateMemory, embedding: List[float], org: OrgContext) -> MemoryRecord:
        key = CollectionKey(org.org_id, candidate.type)
        now = utc_now()

        if candidate.type == MemoryType.SEMANTIC:
            existing = self._find_merge_target(key, candidate, embedding, org.policies.merge_threshold)
            if existing is not None:
                if candidate.confidence >= existing.confidence:
                    merged = dataclasses.replace(existing,
                                                 text=candidate.text,
                                                 embedding=embedding,
                                                 confidence=candidate.confidence,
                                                 updated_at=now,
                                                 source_thread_id=candidate.source_thread_id or existing.source_thread_id)
                else:
                    merged = dataclasses.replace(existing, updated_at=now)
                self.vectors.upsert(key, merged)
                logger.debug(f'Merged semantic candidate into record {existing.id}')
                return merged

        record = MemoryRecord(id=str(uuid.uuid4()),
                              org_id=org.org_id,
                              user_id=candidate.user_id,
                              type=candidate.type,
                              scope=candidate.scope,
                              text=candidate.text,
                              embedding=embedding,
                              confidence=candidate.confidence,
                              created_at=now,
                              updated_at=now,
                              source_thread_id=candidate.source_thread_id)
        self.vectors.upsert(key, record)
        logger.debug(f'Inserted {record.type.value} record {record.id} for org {org.org_id}')
        return record
