"""Tests for scoped, concurrent memory retrieval."""

import time
from datetime import timedelta

import pytest

from memorch.models.core import (CollectionKey, MemoryRecord, MemoryScope, MemoryType, OrgContext, OrgPolicies, SearchFilter,
                                 UserContext)
from memorch.models.errors import IsolationViolation, VectorStoreError
from memorch.services.memory_retriever import MemoryRetriever, merge_results, plan_searches, rank_score
from memorch.utils.memory_vector_store import InMemoryVectorStore
from memorch.utils.timestamp_utils import utc_now
from memorch.utils.vector_collections import VectorCollectionAdapter

from .conftest import basis


class SlowStore(InMemoryVectorStore):
    """In-memory backend whose searches of some collections stall or fail."""

    def __init__(self, slow=(), broken=(), delay=1.0):
        super().__init__()
        self.slow = set(slow)
        self.broken = set(broken)
        self.delay = delay

    def search_documents(self, key, vector, search_filter, top_k):
        if key.memory_type in self.broken:
            raise VectorStoreError(f'{key} unavailable')
        if key.memory_type in self.slow:
            time.sleep(self.delay)
        return super().search_documents(key, vector, search_filter, top_k)


class LeakyStore(InMemoryVectorStore):
    """Backend that ignores scope filters."""

    def search_documents(self, key, vector, search_filter, top_k):
        return super().search_documents(key, vector, None, top_k)


@pytest.fixture
def retriever(embedder, vectors):
    retriever = MemoryRetriever(embedder, vectors)
    yield retriever
    retriever.close()


def seed_all_scopes(seed):
    seed('acme', MemoryType.KNOWLEDGE, 'clinic opens at 8am')
    seed('acme', MemoryType.PROCEDURAL, 'reschedule flow: offer 3 alternatives')
    seed('acme', MemoryType.SEMANTIC, 'u1 prefers morning appointments', MemoryScope.USER, 'u1')
    seed('acme', MemoryType.EPISODIC, 'u1 booked Tuesday 2pm appointment', MemoryScope.USER, 'u1')
    seed('acme', MemoryType.EPISODIC, 'u2 booked Friday appointment', MemoryScope.USER, 'u2')
    seed('acme', MemoryType.SEMANTIC, 'u2 prefers evening appointments', MemoryScope.USER, 'u2')


class TestPlan:

    def test_unregistered_caller_searches_organization_knowledge_and_procedures(self, anonymous):
        plan = plan_searches(anonymous)

        assert [memory_type for memory_type, _ in plan] == [MemoryType.KNOWLEDGE, MemoryType.PROCEDURAL]
        assert all(search_filter == SearchFilter.organization_only() for _, search_filter in plan)

    def test_registered_caller_searches_all_collections(self, registered_u1):
        plan = plan_searches(registered_u1)

        assert {memory_type for memory_type, _ in plan} == set(MemoryType)
        assert all(search_filter.user_id == 'u1' for _, search_filter in plan)


class TestScope:

    def test_unregistered_caller_sees_only_organization_memory(self, retriever, seed, acme, anonymous):
        seed_all_scopes(seed)

        result = retriever.retrieve('appointment', acme, anonymous)

        assert {item.record.type for item in result.records} <= {MemoryType.KNOWLEDGE, MemoryType.PROCEDURAL}
        assert all(item.record.scope == MemoryScope.ORGANIZATION for item in result.records)

    def test_registered_caller_sees_own_memory_only(self, retriever, seed, acme, registered_u1):
        seed_all_scopes(seed)

        result = retriever.retrieve('appointment', acme, registered_u1)

        texts = result.texts()
        assert 'u1 booked Tuesday 2pm appointment' in texts
        assert 'u1 prefers morning appointments' in texts
        assert not any(text.startswith('u2') for text in texts)

    def test_unresolved_identity_is_treated_as_unregistered(self, retriever, seed, acme):
        seed_all_scopes(seed)

        result = retriever.retrieve('appointment', acme, UserContext(user_id='u1', is_registered=False))

        assert all(item.record.scope == MemoryScope.ORGANIZATION for item in result.records)

    def test_other_organization_is_never_returned(self, retriever, seed, acme, registered_u1):
        seed('globex', MemoryType.KNOWLEDGE, 'clinic opens at 8am')
        seed('globex', MemoryType.EPISODIC, 'u1 booked Tuesday 2pm appointment', MemoryScope.USER, 'u1')

        result = retriever.retrieve('clinic appointment', acme, registered_u1)

        assert result.records == []
        assert not result.degraded

    def test_scope_leak_from_backend_is_discarded(self, embedder, registered_u1, acme):
        vectors = VectorCollectionAdapter(LeakyStore())
        stamp = utc_now()
        vectors.upsert(
            CollectionKey('acme', MemoryType.EPISODIC),
            MemoryRecord(id='r-u2',
                         org_id='acme',
                         user_id='u2',
                         type=MemoryType.EPISODIC,
                         scope=MemoryScope.USER,
                         text='u2 appointment',
                         embedding=embedder.embed('u2 appointment'),
                         confidence=0.9,
                         created_at=stamp,
                         updated_at=stamp))
        retriever = MemoryRetriever(embedder, vectors)

        try:
            result = retriever.retrieve('appointment', acme, registered_u1)
        finally:
            retriever.close()

        assert result.records == []

    def test_missing_org_is_an_isolation_violation(self, retriever, registered_u1):
        with pytest.raises(IsolationViolation):
            retriever.retrieve('appointment', OrgContext(''), registered_u1)


class TestRanking:

    def test_results_truncated_to_total_limit(self, embedder, vectors, seed, registered_u1):
        for index in range(8):
            seed('acme', MemoryType.KNOWLEDGE, f'clinic policy number {index}')
        org = OrgContext('acme', OrgPolicies(retrieval_total_limit=5))
        retriever = MemoryRetriever(embedder, vectors)

        try:
            result = retriever.retrieve('clinic policy', org, registered_u1)
        finally:
            retriever.close()

        assert len(result.records) == 5
        scores = [item.rank_score for item in result.records]
        assert scores == sorted(scores, reverse=True)

    def test_recent_episode_outranks_equally_similar_old_one(self, retriever, seed, acme, registered_u1):
        seed('acme', MemoryType.EPISODIC, 'old visit', MemoryScope.USER, 'u1', age_days=40, embedding=basis(0))
        seed('acme', MemoryType.EPISODIC, 'new visit', MemoryScope.USER, 'u1', age_days=0, embedding=basis(0))
        retriever.embedder.overrides['visit'] = basis(0)

        result = retriever.retrieve('visit', acme, registered_u1)

        assert result.texts()[:2] == ['new visit', 'old visit']
        assert result.records[0].rank_score == pytest.approx(1.05)
        assert result.records[1].rank_score == pytest.approx(1.0)

    def test_recency_boost_decays_linearly(self, acme):
        stamp = utc_now()
        record = MemoryRecord(id='r1',
                              org_id='acme',
                              user_id='u1',
                              type=MemoryType.EPISODIC,
                              scope=MemoryScope.USER,
                              text='visit',
                              embedding=basis(0),
                              confidence=0.9,
                              created_at=stamp - timedelta(days=15),
                              updated_at=stamp - timedelta(days=15))

        assert rank_score(record, 0.5, acme.policies, now=stamp) == pytest.approx(0.525)

    def test_recency_boost_only_applies_to_episodes(self, acme):
        stamp = utc_now()
        record = MemoryRecord(id='r1',
                              org_id='acme',
                              type=MemoryType.KNOWLEDGE,
                              scope=MemoryScope.ORGANIZATION,
                              text='opening hours',
                              embedding=basis(0),
                              confidence=0.9,
                              created_at=stamp,
                              updated_at=stamp)

        assert merge_results([[(record, 0.7)]], acme.policies, now=stamp)[0].rank_score == pytest.approx(0.7)


class TestDegradation:

    def test_slow_collection_is_reported_and_skipped(self, embedder, registered_u1):
        store = SlowStore(slow={MemoryType.EPISODIC, MemoryType.SEMANTIC}, delay=1.0)
        vectors = VectorCollectionAdapter(store)
        org = OrgContext('acme', OrgPolicies(retrieval_timeout_seconds=0.2))
        for memory_type in MemoryType:
            scope = MemoryScope.USER if memory_type in (MemoryType.EPISODIC, MemoryType.SEMANTIC) else MemoryScope.ORGANIZATION
            stamp = utc_now()
            vectors.upsert(
                CollectionKey('acme', memory_type),
                MemoryRecord(id=f'r-{memory_type.value}',
                             org_id='acme',
                             user_id='u1' if scope == MemoryScope.USER else None,
                             type=memory_type,
                             scope=scope,
                             text=f'{memory_type.value} appointment note',
                             embedding=embedder.embed(f'{memory_type.value} appointment note'),
                             confidence=0.9,
                             created_at=stamp,
                             updated_at=stamp))
        retriever = MemoryRetriever(embedder, vectors)

        try:
            result = retriever.retrieve('appointment note', org, registered_u1)
        finally:
            retriever.close()

        assert set(result.timed_out) == {MemoryType.EPISODIC, MemoryType.SEMANTIC}
        assert {item.record.type for item in result.records} == {MemoryType.KNOWLEDGE, MemoryType.PROCEDURAL}
        assert result.degraded

    def test_failed_collection_is_reported_and_skipped(self, embedder, registered_u1, acme):
        vectors = VectorCollectionAdapter(SlowStore(broken={MemoryType.KNOWLEDGE}))
        retriever = MemoryRetriever(embedder, vectors)

        try:
            result = retriever.retrieve('appointment', acme, registered_u1)
        finally:
            retriever.close()

        assert result.failed == [MemoryType.KNOWLEDGE]
        assert result.timed_out == []

    def test_unexpected_branch_error_degrades_instead_of_failing(self, embedder, registered_u1, acme):

        class MismatchedStore(InMemoryVectorStore):

            def search_documents(self, key, vector, search_filter, top_k):
                if key.memory_type == MemoryType.SEMANTIC:
                    raise ValueError('query vector dimension does not match the collection')
                return super().search_documents(key, vector, search_filter, top_k)

        vectors = VectorCollectionAdapter(MismatchedStore())
        vectors.upsert(CollectionKey('acme', MemoryType.KNOWLEDGE),
                       MemoryRecord(id='k1',
                                    org_id='acme',
                                    type=MemoryType.KNOWLEDGE,
                                    scope=MemoryScope.ORGANIZATION,
                                    text='clinic opens at 8am',
                                    embedding=embedder.embed('clinic opens at 8am'),
                                    confidence=0.9,
                                    created_at=utc_now(),
                                    updated_at=utc_now()))
        retriever = MemoryRetriever(embedder, vectors)

        try:
            result = retriever.retrieve('clinic hours', acme, registered_u1)
        finally:
            retriever.close()

        assert result.failed == [MemoryType.SEMANTIC]
        assert result.texts() == ['clinic opens at 8am']

    def test_embedding_failure_returns_empty_result(self, retriever, embedder, seed, acme, registered_u1):
        seed_all_scopes(seed)
        embedder.fail('appointment')

        result = retriever.retrieve('appointment', acme, registered_u1)

        assert result.records == []
        assert set(result.failed) == set(MemoryType)

    def test_blank_query_returns_empty_result(self, retriever, acme, registered_u1):
        result = retriever.retrieve('   ', acme, registered_u1)

        assert result.records == []
        assert not result.degraded
