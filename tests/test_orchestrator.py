"""End-to-end tests for the per-turn memory lifecycle."""

import threading

import pytest

from memorch.models.core import AbilityOutcome, CollectionKey, MatchKind, MemoryScope, MemoryType, OrgContext, OrgPolicies
from memorch.models.errors import IsolationViolation, TurnFailure, VersionConflict
from memorch.services.checkpoint_store import CheckpointStore
from memorch.services.memory_classifier import MemoryClassifier
from memorch.services.memory_retriever import MemoryRetriever
from memorch.services.memory_writer import MemoryWriter
from memorch.services.orchestrator import ConversationOrchestrator
from memorch.services.state_correlator import ACTIVE_ABILITY, CURRENT_STEP, StateCorrelator
from memorch.services.trigger_matcher import TriggerMatcher
from memorch.utils.config import CheckpointConfig

from .conftest import FakeExtractor, basis, vector_with_cosine

RESCHEDULED = {'type': 'episodic', 'text': 'rescheduled due to conflict', 'confidence': 0.9}


class RecordingResponder:

    def __init__(self):
        self.calls = []

    def __call__(self, text, retrieval, trigger, checkpoint):
        self.calls.append((text, retrieval, trigger, checkpoint))
        return f'ack: {text}'


class AlwaysConflictingStore(CheckpointStore):

    def save(self, checkpoint):
        raise VersionConflict(checkpoint.thread_id, checkpoint.version, checkpoint.version + 1)


def build(checkpoints, embedder, vectors, pattern_store, extractor, responder):
    return ConversationOrchestrator(checkpoints=checkpoints,
                                    retriever=MemoryRetriever(embedder, vectors),
                                    classifier=MemoryClassifier(extractor),
                                    writer=MemoryWriter(embedder, vectors, pattern_store=pattern_store),
                                    matcher=TriggerMatcher(pattern_store, embedder),
                                    correlator=StateCorrelator(embedder, checkpoints),
                                    responder=responder)


@pytest.fixture
def extractor():
    return FakeExtractor([RESCHEDULED])


@pytest.fixture
def responder():
    return RecordingResponder()


@pytest.fixture
def orchestrator(checkpoint_store, embedder, vectors, pattern_store, extractor, responder):
    orchestrator = build(checkpoint_store, embedder, vectors, pattern_store, extractor, responder)
    yield orchestrator
    orchestrator.close()


class TestRescheduleScenario:

    @pytest.fixture(autouse=True)
    def clinic(self, seed, pattern_store):
        seed('acme', MemoryType.EPISODIC, 'booked Tuesday 2pm with Dr. X', MemoryScope.USER, 'u1')
        seed('acme', MemoryType.PROCEDURAL, 'reschedule flow: offer 3 alternatives')
        pattern_store.ensure_pattern('acme', 'reschedule appointment')

    def test_turn_sees_memory_and_triggers_ability(self, orchestrator, responder, acme, registered_u1):
        result = orchestrator.handle_turn(acme, 't1', registered_u1, 'reschedule appointment')

        texts = result.retrieval.texts()
        assert 'booked Tuesday 2pm with Dr. X' in texts
        assert 'reschedule flow: offer 3 alternatives' in texts
        assert result.trigger.kind == MatchKind.DETERMINISTIC
        assert result.response == 'ack: reschedule appointment'
        assert responder.calls[0][2] == result.trigger

    def test_literal_request_recalls_booking_and_records_reschedule(self, orchestrator, vectors, acme, registered_u1):
        first = orchestrator.handle_turn(acme, 't1', registered_u1, 'reschedule my Tuesday 2pm')
        second = orchestrator.handle_turn(acme, 't1', registered_u1, 'Reschedule appointment', session_end=True)

        texts = first.retrieval.texts()
        assert 'booked Tuesday 2pm with Dr. X' in texts
        assert 'reschedule flow: offer 3 alternatives' in texts
        assert first.trigger.kind != MatchKind.DETERMINISTIC
        assert second.trigger.kind == MatchKind.DETERMINISTIC
        assert second.trigger.confidence == 1.0
        assert second.trigger.phrase == 'reschedule appointment'

        outcome = second.summary.result(timeout=5)
        assert [r.text for r in outcome.records] == ['rescheduled due to conflict']
        episodes = [r for r, _ in vectors.search(CollectionKey('acme', MemoryType.EPISODIC), outcome.records[0].embedding, top_k=5)]
        assert sorted(r.text for r in episodes) == ['booked Tuesday 2pm with Dr. X', 'rescheduled due to conflict']

    def test_checkpoint_records_the_turn(self, orchestrator, checkpoint_store, acme, registered_u1):
        result = orchestrator.handle_turn(acme, 't1', registered_u1, 'reschedule appointment')

        stored = checkpoint_store.load('t1', 'acme')
        assert stored.version == result.checkpoint.version == 1
        assert [(m['role'], m['content']) for m in stored.message_log] == [('user', 'reschedule appointment'),
                                                                              ('assistant', 'ack: reschedule appointment')]
        assert stored.message_log[1]['trigger'] == 'deterministic'
        assert stored.user_id == 'u1'

    def test_session_end_writes_new_episode(self, orchestrator, vectors, acme, registered_u1):
        result = orchestrator.handle_turn(acme, 't1', registered_u1, 'reschedule appointment', session_end=True)

        outcome = result.summary.result(timeout=5)

        assert [r.text for r in outcome.records] == ['rescheduled due to conflict']
        record = outcome.records[0]
        assert record.type == MemoryType.EPISODIC
        assert record.user_id == 'u1'
        assert record.source_thread_id == 't1'
        followup = orchestrator.retriever.retrieve('rescheduled due to conflict', acme, registered_u1)
        assert 'rescheduled due to conflict' in followup.texts()

    def test_unregistered_caller_sees_and_leaves_no_user_memory(self, orchestrator, acme, anonymous):
        result = orchestrator.handle_turn(acme, 't2', anonymous, 'reschedule appointment', session_end=True)

        assert 'booked Tuesday 2pm with Dr. X' not in result.retrieval.texts()
        assert result.summary.result(timeout=5).records == []


class TestSummaryBoundary:

    def test_tenth_turn_summarizes_exactly_once(self, orchestrator, extractor, acme, registered_u1):
        results = [orchestrator.handle_turn(acme, 't1', registered_u1, f'message {index}') for index in range(11)]
        assert orchestrator.drain(timeout=5)

        assert [r.summarized for r in results] == [False] * 9 + [True, False]
        assert results[9].checkpoint.turns_since_summary == 0
        assert results[10].checkpoint.turns_since_summary == 1
        assert len(extractor.calls) == 1
        assert len(extractor.calls[0]) == 20

    def test_interval_is_an_org_policy(self, orchestrator, extractor, registered_u1):
        org = OrgContext('acme', OrgPolicies(summary_interval_turns=2))

        results = [orchestrator.handle_turn(org, 't1', registered_u1, f'message {index}') for index in range(4)]
        assert orchestrator.drain(timeout=5)

        assert [r.summarized for r in results] == [False, True, False, True]
        assert [len(window) for window in extractor.calls] == [4, 4]

    def test_background_failure_does_not_fail_the_turn(self, checkpoint_store, embedder, vectors, pattern_store, responder, acme,
                                                       registered_u1):

        class BrokenExtractor:

            def extract(self, window, org, user):
                raise RuntimeError('model exploded')

        orchestrator = build(checkpoint_store, embedder, vectors, pattern_store, BrokenExtractor(), responder)
        try:
            result = orchestrator.handle_turn(acme, 't1', registered_u1, 'hello', session_end=True)
            assert isinstance(result.summary.exception(timeout=5), RuntimeError)
            assert checkpoint_store.load('t1', 'acme').version == 1
        finally:
            orchestrator.close()


class TestCheckpointFailures:

    def test_concurrent_save_is_retried_on_fresh_state(self, checkpoint_store, embedder, vectors, pattern_store, extractor, acme,
                                                       registered_u1):

        def interfering(text, retrieval, trigger, checkpoint):
            other = checkpoint_store.load('t1', 'acme')
            if 'agent' not in other.workflow_variables:
                other.workflow_variables['agent'] = 'human'
                checkpoint_store.save(other)
            return 'ok'

        orchestrator = build(checkpoint_store, embedder, vectors, pattern_store, extractor, interfering)
        try:
            result = orchestrator.handle_turn(acme, 't1', registered_u1, 'hello')
        finally:
            orchestrator.close()

        assert result.checkpoint.version == 2
        stored = checkpoint_store.load('t1', 'acme')
        assert stored.workflow_variables['agent'] == 'human'
        assert [m['content'] for m in stored.message_log] == ['hello', 'ok']

    def test_persistent_conflicts_fail_the_turn(self, db_path, embedder, vectors, pattern_store, extractor, responder, acme,
                                                registered_u1):
        store = AlwaysConflictingStore(CheckpointConfig(db_path=db_path, max_save_attempts=3))
        orchestrator = build(store, embedder, vectors, pattern_store, extractor, responder)
        try:
            with pytest.raises(TurnFailure):
                orchestrator.handle_turn(acme, 't1', registered_u1, 'hello')
        finally:
            orchestrator.close()
            store.close()

    def test_unavailable_store_fails_the_turn(self, orchestrator, checkpoint_store, acme, registered_u1):
        checkpoint_store.close()

        with pytest.raises(TurnFailure):
            orchestrator.handle_turn(acme, 't1', registered_u1, 'hello')

    def test_thread_of_another_org_is_refused(self, orchestrator, acme, registered_u1):
        orchestrator.handle_turn(acme, 't1', registered_u1, 'hello')

        with pytest.raises(IsolationViolation):
            orchestrator.handle_turn(OrgContext('globex'), 't1', registered_u1, 'hello')


class TestAbilities:

    def test_correlator_tracks_active_ability(self, orchestrator, embedder, checkpoint_store, acme, registered_u1):
        embedder.overrides['pick new date'] = basis(0)
        embedder.overrides['confirm slot'] = basis(2)
        embedder.overrides['tomorrow works for me'] = vector_with_cosine(0.9)
        orchestrator.start_ability(acme, 't1', registered_u1, 'reschedule', ['pick new date', 'confirm slot'])

        result = orchestrator.handle_turn(acme, 't1', registered_u1, 'tomorrow works for me')
        correlated = result.correlation.result(timeout=5)

        assert correlated.workflow_variables[CURRENT_STEP] == 'pick new date'
        assert checkpoint_store.load('t1', 'acme').workflow_variables[CURRENT_STEP] == 'pick new date'

    def test_outcome_updates_patterns_and_state(self, orchestrator, pattern_store, checkpoint_store, acme, registered_u1):
        orchestrator.start_ability(acme, 't1', registered_u1, 'reschedule', ['pick new date'])

        saved = orchestrator.report_ability_outcome(
            acme, 't1', registered_u1,
            AbilityOutcome(ability_id='reschedule',
                           outcome='success',
                           variables={'new_slot': 'Wednesday 10am'},
                           trigger_phrase='Reschedule appointment'))

        assert saved.workflow_variables['new_slot'] == 'Wednesday 10am'
        assert ACTIVE_ABILITY not in saved.workflow_variables
        assert saved.message_log[-1]['role'] == 'event'
        assert pattern_store.get_pattern('acme', 'reschedule appointment').success_count == 1
        assert checkpoint_store.load('t1', 'acme').version == saved.version

    def test_invalid_outcome_is_rejected(self):
        with pytest.raises(ValueError):
            AbilityOutcome(ability_id='reschedule', outcome='maybe')


class TestSessionAndUserLifecycle:

    def test_end_session_archives_and_discards(self, orchestrator, checkpoint_store, extractor, acme, registered_u1):
        orchestrator.handle_turn(acme, 't1', registered_u1, 'I moved to Springfield')
        orchestrator.handle_turn(acme, 't1', registered_u1, 'and changed my number')
        assert orchestrator.drain(timeout=5)

        outcome = orchestrator.end_session(acme, 't1', registered_u1).result(timeout=5)

        assert len(extractor.calls[-1]) == 4
        assert [r.text for r in outcome.records] == ['rescheduled due to conflict']
        assert checkpoint_store.load('t1', 'acme').is_new

    def test_turn_saved_during_archival_is_classified_before_discard(self, checkpoint_store, embedder, vectors, pattern_store,
                                                                     responder, acme, registered_u1):

        class GatedExtractor(FakeExtractor):

            def __init__(self):
                super().__init__([RESCHEDULED])
                self.entered = threading.Event()
                self.release = threading.Event()

            def extract(self, window, org, user):
                items = super().extract(window, org, user)
                if len(self.calls) == 1:
                    self.entered.set()
                    self.release.wait(timeout=5)
                return items

        extractor = GatedExtractor()
        orchestrator = build(checkpoint_store, embedder, vectors, pattern_store, extractor, responder)
        try:
            orchestrator.handle_turn(acme, 't1', registered_u1, 'hello')
            archival = orchestrator.end_session(acme, 't1', registered_u1)
            assert extractor.entered.wait(timeout=5)

            orchestrator.handle_turn(acme, 't1', registered_u1, 'one more thing')
            extractor.release.set()
            archival.result(timeout=5)
        finally:
            orchestrator.close()

        assert [[m['content'] for m in window] for window in extractor.calls] == [['hello', 'ack: hello'],
                                                                                   ['one more thing', 'ack: one more thing']]
        assert checkpoint_store.load('t1', 'acme').is_new

    def test_forget_user_removes_only_that_users_memory(self, orchestrator, seed, acme, registered_u1):
        seed('acme', MemoryType.EPISODIC, 'u1 visit', MemoryScope.USER, 'u1')
        seed('acme', MemoryType.SEMANTIC, 'u1 likes mornings', MemoryScope.USER, 'u1')
        seed('acme', MemoryType.EPISODIC, 'u2 visit', MemoryScope.USER, 'u2')
        seed('acme', MemoryType.KNOWLEDGE, 'clinic visit policy')

        assert orchestrator.forget_user(acme, 'u1') == 2

        texts = orchestrator.retriever.retrieve('visit', acme, registered_u1).texts()
        assert texts == ['clinic visit policy']
