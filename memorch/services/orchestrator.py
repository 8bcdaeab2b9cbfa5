"""
Conversation Orchestrator: drives the per-turn memory lifecycle.

load checkpoint -> retrieve -> match trigger -> generate response (external) ->
append turn -> save checkpoint (version-checked) -> background classification/write
and background state correlation.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional

from ..models.core import (AbilityOutcome, Checkpoint, OrgContext, RetrievalResult, SummaryOutcome, TriggerMatch, TurnResult,
                           UserContext)
from ..models.errors import CheckpointStoreUnavailable, TurnFailure, VersionConflict
from ..utils.config import AppConfig
from ..utils.logging_config import get_logger
from .checkpoint_store import CheckpointStore
from .memory_classifier import MemoryClassifier
from .memory_retriever import MemoryRetriever
from .memory_writer import MemoryWriter
from .state_correlator import ABILITY_STEPS, ACTIVE_ABILITY, CURRENT_STEP, CURRENT_STEP_INDEX, STEP_CONFIDENCE, StateCorrelator
from .trigger_matcher import TriggerMatcher

logger = get_logger(__name__)

Responder = Callable[[str, RetrievalResult, TriggerMatch, Checkpoint], str]
Mutation = Callable[[Checkpoint], None]


class ConversationOrchestrator:
    """Run conversation turns against the memory engine for many tenants."""

    def __init__(self,
                 checkpoints: CheckpointStore,
                 retriever: MemoryRetriever,
                 classifier: MemoryClassifier,
                 writer: MemoryWriter,
                 matcher: TriggerMatcher,
                 correlator: StateCorrelator,
                 responder: Responder,
                 max_save_attempts: int = 3,
                 background_workers: int = 4):
        """
        Args:
            checkpoints: Durable STM store
            retriever: LTM retriever
            classifier: Memory classifier
            writer: Memory writer
            matcher: Trigger matcher
            correlator: Background state correlator
            responder: External response generator `(text, retrieval, trigger, checkpoint) -> str`
            max_save_attempts: Version-conflict retries before a turn fails
            background_workers: Threads for classification/write and correlation
        """
        self.checkpoints = checkpoints
        self.retriever = retriever
        self.classifier = classifier
        self.writer = writer
        self.matcher = matcher
        self.correlator = correlator
        self.responder = responder
        self.max_save_attempts = max_save_attempts
        self._background = ThreadPoolExecutor(max_workers=background_workers, thread_name_prefix='memorch-background')
        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()
        logger.info('Initialized ConversationOrchestrator')

    @classmethod
    def from_config(cls, app_config: AppConfig, responder: Responder) -> 'ConversationOrchestrator':
        """Wire the production stack (Bedrock, configured vector backend, SQLite) from configuration."""
        from ..utils.bedrock_embed import BedrockEmbed
        from ..utils.bedrock_llm import BedrockLLM
        from ..utils.vector_collections import build_vector_adapter
        from .memory_classifier import BedrockMemoryExtractor
        from .trigger_matcher import TriggerPatternStore

        embedder = BedrockEmbed(app_config.bedrock_embed)
        vectors = build_vector_adapter(app_config)
        checkpoints = CheckpointStore(app_config.checkpoint)
        patterns = TriggerPatternStore(app_config.checkpoint.db_path)
        return cls(checkpoints=checkpoints,
                   retriever=MemoryRetriever(embedder, vectors, max_workers=app_config.retrieval.max_workers),
                   classifier=MemoryClassifier(BedrockMemoryExtractor(BedrockLLM(app_config.bedrock_llm))),
                   writer=MemoryWriter(embedder, vectors, pattern_store=patterns),
                   matcher=TriggerMatcher(patterns, embedder),
                   correlator=StateCorrelator(embedder, checkpoints),
                   responder=responder,
                   max_save_attempts=app_config.checkpoint.max_save_attempts)

    def _submit(self, description: str, fn: Callable, *args) -> Future:

        def task():
            try:
                return fn(*args)
            except Exception as e:
                logger.error(f'Background {description} failed: {e}')
                raise

        future = self._background.submit(task)
        with self._pending_lock:
            self._pending = [f for f in self._pending if not f.done()] + [future]
        return future

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for outstanding background work. Returns True if all of it finished."""
        with self._pending_lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        """Let background writes finish, then release worker threads."""
        self._background.shutdown(wait=True)
        self.retriever.close()

    def _summarize(self, window: List[Dict[str, Any]], org: OrgContext, user: UserContext, thread_id: str) -> SummaryOutcome:
        candidates = self.classifier.classify(window, org, user, thread_id=thread_id)
        records = self.writer.write(candidates, org)
        logger.info(f'Summarized thread {thread_id}: {len(candidates)} candidates, {len(records)} records written')
        return SummaryOutcome(thread_id=thread_id, candidates=candidates, records=records)

    def _archive(self, checkpoint: Checkpoint, org: OrgContext, user: UserContext) -> SummaryOutcome:
        """Classify the thread's remaining messages, then discard the checkpoint if nothing was saved meanwhile.

        A turn saved during classification bumps the version; its messages are
        classified on the next pass. If the thread keeps changing, the checkpoint
        is left in place.
        """
        thread_id = checkpoint.thread_id
        outcome = SummaryOutcome(thread_id=thread_id)
        classified_upto = checkpoint.summary_cursor

        for attempt in range(self.max_save_attempts):
            start = max(classified_upto, checkpoint.summary_cursor)
            window = checkpoint.message_log[start:]
            if window or attempt == 0:
                partial = self._summarize(window, org, user, thread_id)
                outcome.candidates.extend(partial.candidates)
                outcome.records.extend(partial.records)
            classified_upto = len(checkpoint.message_log)

            if checkpoint.is_new or self.checkpoints.discard(thread_id, expected_version=checkpoint.version):
                return outcome

            logger.info(f'Thread {thread_id} changed during archival, classifying the new messages')
            checkpoint = self._load(thread_id, org, user)

        logger.warning(f'Thread {thread_id} kept changing during archival, checkpoint left in place')
        return outcome

    def _load(self, thread_id: str, org: OrgContext, user: UserContext) -> Checkpoint:
        try:
            return self.checkpoints.load(thread_id, org.org_id, user.user_id)
        except CheckpointStoreUnavailable as e:
            logger.error(f'Checkpoint store unavailable for thread {thread_id}: {e}')
            raise TurnFailure(f'Cannot load conversation state: {e}')

    def _save_with_retry(self, checkpoint: Checkpoint, org: OrgContext, user: UserContext, mutate: Mutation) -> Checkpoint:
        """Apply `mutate` to a fresh copy and save, reloading on version conflicts."""
        for attempt in range(self.max_save_attempts):
            working = checkpoint.snapshot()
            mutate(working)
            try:
                return self.checkpoints.save(working)
            except VersionConflict as e:
                logger.warning(f'Checkpoint conflict on attempt {attempt + 1}/{self.max_save_attempts}: {e}')
                checkpoint = self._load(checkpoint.thread_id, org, user)
            except CheckpointStoreUnavailable as e:
                logger.error(f'Checkpoint store unavailable for thread {checkpoint.thread_id}: {e}')
                raise TurnFailure(f'Cannot save conversation state: {e}')

        raise TurnFailure(f'Checkpoint for thread {checkpoint.thread_id} kept conflicting after {self.max_save_attempts} attempts')

    def handle_turn(self, org: OrgContext, thread_id: str, user: UserContext, text: str, session_end: bool = False) -> TurnResult:
        """
        Run one conversation turn.

        Args:
            org: Organization context
            thread_id: Conversation thread
            user: Resolved caller identity and registration state
            text: User input
            session_end: Classify the whole unsummarized window after this turn

        Returns:
            TurnResult with the response, saved checkpoint, retrieval and trigger match

        Raises:
            TurnFailure: If checkpoint persistence is unavailable or keeps conflicting
            IsolationViolation: If any step crosses an organization boundary
        """
        checkpoint = self._load(thread_id, org, user)

        retrieval = self.retriever.retrieve(text, org, user)
        trigger = self.matcher.match(text, org, retrieval)
        response = self.responder(text, retrieval, trigger, checkpoint)

        interval = org.policies.summary_interval_turns
        window: List[Dict[str, Any]] = []

        def append_turn(working: Checkpoint) -> None:
            window.clear()
            if user.user_id and not working.user_id:
                working.user_id = user.user_id
            working.append_message('user', text)
            working.append_message('assistant', response, trigger=trigger.kind.value)
            working.turns_since_summary += 1
            if session_end or working.turns_since_summary >= interval:
                window.extend(working.unsummarized_window())
                working.mark_summarized()

        saved = self._save_with_retry(checkpoint, org, user, append_turn)

        summary = None
        if window:
            logger.debug(f'Thread {thread_id} reached a summary boundary, classifying {len(window)} messages')
            summary = self._submit('summarization', self._summarize, list(window), org, user, thread_id)

        correlation = self._submit('state correlation', self.correlator.run, text, saved.snapshot(),
                                   org.policies.correlator_confidence_threshold)

        return TurnResult(response=response,
                          checkpoint=saved,
                          retrieval=retrieval,
                          trigger=trigger,
                          summary=summary,
                          correlation=correlation)

    def end_session(self, org: OrgContext, thread_id: str, user: UserContext) -> Future:
        """
        Move a thread's remaining STM into LTM and discard its checkpoint.

        The checkpoint is only discarded at the version whose messages were
        classified, so turns saved in the meantime are never lost.

        Returns:
            Future resolving to the SummaryOutcome
        """
        checkpoint = self._load(thread_id, org, user)
        logger.info(f'Ending session for thread {thread_id} with {len(checkpoint.unsummarized_window())} unsummarized messages')
        return self._submit('session archival', self._archive, checkpoint, org, user)

    def start_ability(self, org: OrgContext, thread_id: str, user: UserContext, ability_id: str, steps: List[str]) -> Checkpoint:
        """Record the ability now running on a thread and its expected step sequence."""

        def activate(working: Checkpoint) -> None:
            working.workflow_variables[ACTIVE_ABILITY] = ability_id
            working.workflow_variables[ABILITY_STEPS] = list(steps)
            for key in (CURRENT_STEP, CURRENT_STEP_INDEX, STEP_CONFIDENCE):
                working.workflow_variables.pop(key, None)

        return self._save_with_retry(self._load(thread_id, org, user), org, user, activate)

    def report_ability_outcome(self, org: OrgContext, thread_id: str, user: UserContext, outcome: AbilityOutcome) -> Checkpoint:
        """
        Feed an ability result back into trigger statistics, workflow state and the message log.

        Returns:
            The saved checkpoint
        """
        phrase = outcome.trigger_phrase or outcome.ability_id
        self.matcher.record_outcome(org, phrase, outcome.succeeded)

        def record(working: Checkpoint) -> None:
            working.workflow_variables.update(outcome.variables)
            if working.workflow_variables.get(ACTIVE_ABILITY) == outcome.ability_id:
                for key in (ACTIVE_ABILITY, ABILITY_STEPS, CURRENT_STEP, CURRENT_STEP_INDEX, STEP_CONFIDENCE):
                    working.workflow_variables.pop(key, None)
            working.append_message('event', f'Ability {outcome.ability_id} finished with {outcome.outcome}', ability_id=outcome.ability_id)

        return self._save_with_retry(self._load(thread_id, org, user), org, user, record)

    def forget_user(self, org: OrgContext, user_id: str) -> int:
        """Delete every user-scoped memory of a user within the organization."""
        return self.writer.vectors.delete_user_records(org.org_id, user_id)
