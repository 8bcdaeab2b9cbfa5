"""
Trigger Matcher: intent recognition over one turn's input, biased by procedural memory
and by the historical outcomes of each trigger pattern.
"""

import re
import sqlite3
import threading
from typing import Dict, List, Optional, Set, Tuple

from ..models.core import MatchKind, MemoryType, OrgContext, RetrievalResult, TriggerMatch, TriggerPattern
from ..models.errors import CheckpointStoreUnavailable, EmbeddingFailure
from ..utils.logging_config import get_logger
from ..utils.similarity import cosine_similarity
from .checkpoint_store import connect_sqlite

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS trigger_patterns (
    org_id        TEXT NOT NULL,
    phrase        TEXT NOT NULL,
    match_kind    TEXT NOT NULL,
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (org_id, phrase)
);
"""


def normalize_phrase(text: str) -> str:
    """Case-fold, drop surrounding punctuation and collapse whitespace."""
    text = re.sub(r'\s+', ' ', str(text or '').strip().lower())
    return text.strip(' .,!?;:')


class TriggerPatternStore:
    """SQLite persistence for trigger patterns, keyed by (org_id, normalized phrase)."""

    def __init__(self, db_path: str):
        self._lock = threading.RLock()
        try:
            self._conn = connect_sqlite(db_path)
            with self._conn:
                self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            logger.error(f'Failed to open trigger pattern store at {db_path}: {e}')
            raise CheckpointStoreUnavailable(f'Trigger pattern store unavailable: {e}')

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def list_patterns(self, org_id: str) -> List[TriggerPattern]:
        """
        Raises:
            CheckpointStoreUnavailable: On persistence failure
        """
        try:
            with self._lock:
                rows = self._conn.execute('SELECT * FROM trigger_patterns WHERE org_id = ? ORDER BY phrase', (org_id, )).fetchall()
        except sqlite3.Error as e:
            logger.error(f'Error listing trigger patterns for org {org_id}: {e}')
            raise CheckpointStoreUnavailable(f'Failed to list trigger patterns: {e}')
        return [
            TriggerPattern(org_id=row['org_id'],
                           phrase=row['phrase'],
                           match_kind=MatchKind(row['match_kind']),
                           success_count=row['success_count'],
                           failure_count=row['failure_count']) for row in rows
        ]

    def get_pattern(self, org_id: str, phrase: str) -> Optional[TriggerPattern]:
        key = normalize_phrase(phrase)
        return next((p for p in self.list_patterns(org_id) if p.phrase == key), None)

    def ensure_pattern(self, org_id: str, phrase: str, match_kind: MatchKind = MatchKind.DETERMINISTIC) -> None:
        """Register a phrase for an organization; existing patterns are left untouched."""
        key = normalize_phrase(phrase)
        if not key:
            return
        try:
            with self._lock, self._conn:
                self._conn.execute('INSERT OR IGNORE INTO trigger_patterns (org_id, phrase, match_kind) VALUES (?, ?, ?)',
                                   (org_id, key, match_kind.value))
        except sqlite3.Error as e:
            logger.error(f"Error registering trigger '{key}' for org {org_id}: {e}")
            raise CheckpointStoreUnavailable(f'Failed to register trigger pattern: {e}')

    def record_outcome(self, org_id: str, phrase: str, succeeded: bool) -> TriggerPattern:
        """
        Increment the success or failure counter of a pattern, creating it if needed.

        Returns:
            The updated pattern
        """
        key = normalize_phrase(phrase)
        column = 'success_count' if succeeded else 'failure_count'
        try:
            with self._lock, self._conn:
                self._conn.execute('INSERT OR IGNORE INTO trigger_patterns (org_id, phrase, match_kind) VALUES (?, ?, ?)',
                                   (org_id, key, MatchKind.PROBABILISTIC.value))
                self._conn.execute(f'UPDATE trigger_patterns SET {column} = {column} + 1 WHERE org_id = ? AND phrase = ?', (org_id, key))
        except sqlite3.Error as e:
            logger.error(f"Error recording outcome for trigger '{key}' in org {org_id}: {e}")
            raise CheckpointStoreUnavailable(f'Failed to record trigger outcome: {e}')
        logger.debug(f"Recorded {'success' if succeeded else 'failure'} for trigger '{key}' in org {org_id}")
        return self.get_pattern(org_id, key)


class TriggerMatcher:
    """Classify input as a deterministic, probabilistic or no match against known intents.

    Deterministic: the normalized input equals a deterministic pattern phrase
    (confidence 1.0). Probabilistic: the best similarity to any pattern or retrieved
    procedural memory, scaled by the pattern's outcome history, exceeds the
    organization's threshold; the caller must confirm before acting.
    """

    def __init__(self, store: TriggerPatternStore, embedder):
        self.store = store
        self.embedder = embedder
        self._phrase_embeddings: Dict[Tuple[str, str], List[float]] = {}
        self._cache_lock = threading.Lock()

    def _phrase_embedding(self, org_id: str, phrase: str) -> List[float]:
        key = (org_id, phrase)
        with self._cache_lock:
            cached = self._phrase_embeddings.get(key)
        if cached is None:
            cached = self.embedder.embed(phrase)
            with self._cache_lock:
                self._phrase_embeddings[key] = cached
        return cached

    def _retain_phrases(self, org_id: str, phrases: Set[str]) -> None:
        """Drop cached embeddings of an organization's phrases that are no longer patterns."""
        with self._cache_lock:
            stale = [key for key in self._phrase_embeddings if key[0] == org_id and key[1] not in phrases]
            for key in stale:
                del self._phrase_embeddings[key]

    def match(self, text: str, org: OrgContext, retrieval: Optional[RetrievalResult] = None) -> TriggerMatch:
        """
        Match one turn's input.

        Args:
            text: User input
            org: Organization whose patterns apply
            retrieval: Retrieval result for the same input; its procedural records
                act as additional historical intents

        Returns:
            TriggerMatch
        """
        normalized = normalize_phrase(text)
        if not normalized:
            return TriggerMatch.no_match()

        try:
            patterns = self.store.list_patterns(org.org_id)
            self._retain_phrases(org.org_id, {pattern.phrase for pattern in patterns})
        except CheckpointStoreUnavailable as e:
            logger.warning(f'Trigger patterns unavailable for org {org.org_id}, matching procedural memory only: {e}')
            patterns = []

        for pattern in patterns:
            if pattern.match_kind == MatchKind.DETERMINISTIC and pattern.phrase == normalized:
                logger.debug(f"Deterministic trigger '{pattern.phrase}' for org {org.org_id}")
                return TriggerMatch(kind=MatchKind.DETERMINISTIC, confidence=1.0, phrase=pattern.phrase, source='pattern')

        best: Optional[TriggerMatch] = None
        try:
            query_embedding = self.embedder.embed(text)
            for pattern in patterns:
                similarity = cosine_similarity(query_embedding, self._phrase_embedding(org.org_id, pattern.phrase))
                confidence = similarity * pattern.outcome_factor
                if best is None or confidence > best.confidence:
                    best = TriggerMatch(kind=MatchKind.PROBABILISTIC, confidence=confidence, phrase=pattern.phrase, source='pattern')
        except EmbeddingFailure as e:
            logger.warning(f'Probabilistic trigger matching skipped for org {org.org_id}: {e}')

        if retrieval is not None and retrieval.org_id == org.org_id:
            for item in retrieval.of_type(MemoryType.PROCEDURAL):
                phrase = normalize_phrase(item.record.text)
                known = next((p for p in patterns if p.phrase == phrase), None)
                confidence = item.score * (known.outcome_factor if known else 1.0)
                if best is None or confidence > best.confidence:
                    best = TriggerMatch(kind=MatchKind.PROBABILISTIC, confidence=confidence, phrase=phrase, source='procedural_memory')

        if best is not None and best.confidence > org.policies.trigger_probabilistic_threshold:
            logger.debug(f"Probabilistic trigger '{best.phrase}' ({best.confidence:.3f}) for org {org.org_id}")
            return best
        return TriggerMatch.no_match()

    def record_outcome(self, org: OrgContext, phrase: str, succeeded: bool) -> TriggerPattern:
        """Feed an ability outcome back into the pattern's counters."""
        return self.store.record_outcome(org.org_id, phrase, succeeded)
