"""
Background state correlator: infers workflow progress of the active ability from a turn.

Works on a private checkpoint snapshot and writes back only through the
version-checked checkpoint save; a lost race drops the update.
"""

import dataclasses
from typing import Any, Dict, List, Optional

from ..models.core import Checkpoint, CorrelationResult
from ..models.errors import EmbeddingFailure, VersionConflict
from ..utils.logging_config import get_logger
from ..utils.similarity import batch_cosine_similarity

logger = get_logger(__name__)

ACTIVE_ABILITY = 'active_ability'
ABILITY_STEPS = 'ability_steps'
CURRENT_STEP = 'current_step'
CURRENT_STEP_INDEX = 'current_step_index'
STEP_CONFIDENCE = 'step_confidence'


def active_steps(workflow_variables: Dict[str, Any]) -> List[str]:
    steps = workflow_variables.get(ABILITY_STEPS) or []
    return [str(step) for step in steps if str(step).strip()]


def apply_correlation(checkpoint: Checkpoint, result: CorrelationResult, threshold: float) -> bool:
    """Record the detected step on the checkpoint if the verdict is confident enough.

    Returns:
        True if workflow_variables changed
    """
    if result.step is None or result.confidence <= threshold:
        return False
    if checkpoint.workflow_variables.get(ACTIVE_ABILITY) != result.ability_id:
        return False

    checkpoint.workflow_variables[CURRENT_STEP] = result.step
    checkpoint.workflow_variables[CURRENT_STEP_INDEX] = result.step_index
    checkpoint.workflow_variables[STEP_CONFIDENCE] = round(result.confidence, 4)
    return True


class StateCorrelator:
    """Compare a turn against the active ability's expected step sequence."""

    def __init__(self, embedder, checkpoint_store):
        self.embedder = embedder
        self.checkpoint_store = checkpoint_store

    def correlate(self, turn_text: str, checkpoint: Checkpoint) -> Optional[CorrelationResult]:
        """
        Score the turn against each expected step of the active ability.

        Returns:
            The best-matching step with its similarity as confidence, or None when
            no ability is active or the turn cannot be embedded
        """
        steps = active_steps(checkpoint.workflow_variables)
        if not steps or not turn_text.strip():
            return None

        try:
            turn_embedding = self.embedder.embed(turn_text)
            step_embeddings = [self.embedder.embed(step) for step in steps]
        except EmbeddingFailure as e:
            logger.debug(f'Correlator skipped for thread {checkpoint.thread_id}: {e}')
            return None

        scores = batch_cosine_similarity(turn_embedding, step_embeddings)
        best = int(scores.argmax())
        return CorrelationResult(thread_id=checkpoint.thread_id,
                                 ability_id=checkpoint.workflow_variables.get(ACTIVE_ABILITY),
                                 step=steps[best],
                                 step_index=best,
                                 confidence=float(scores[best]))

    def run(self, turn_text: str, snapshot: Checkpoint, threshold: float) -> Optional[Checkpoint]:
        """
        Correlate and, above the threshold, save the updated snapshot.

        Args:
            turn_text: Latest user input
            snapshot: Private copy of the checkpoint as saved by the foreground turn
            threshold: Minimum confidence required to touch workflow_variables

        Returns:
            The saved checkpoint, or None if nothing was written
        """
        result = self.correlate(turn_text, snapshot)
        if result is None:
            return None

        updated = dataclasses.replace(snapshot, workflow_variables=dict(snapshot.workflow_variables))
        if not apply_correlation(updated, result, threshold):
            logger.debug(f'Correlator confidence {result.confidence:.3f} below {threshold} for thread {snapshot.thread_id}')
            return None

        try:
            saved = self.checkpoint_store.save(updated)
        except VersionConflict:
            logger.debug(f'Correlator update for thread {snapshot.thread_id} lost the race, dropped')
            return None

        logger.debug(f"Correlator moved thread {snapshot.thread_id} to step '{result.step}'")
        return saved
