"""
Core data models for the memory orchestration engine.
"""

import copy
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..utils.config import AppConfig
from ..utils.timestamp_utils import parse_iso, to_iso, utc_now


class MemoryType(str, Enum):
    """Long-term memory record types, one vector collection each."""
    EPISODIC = 'episodic'
    SEMANTIC = 'semantic'
    PROCEDURAL = 'procedural'
    KNOWLEDGE = 'knowledge'


class MemoryScope(str, Enum):
    """Visibility of a memory record within its organization."""
    USER = 'user'
    ORGANIZATION = 'organization'


class MatchKind(str, Enum):
    """Outcome of trigger matching for one turn's input."""
    DETERMINISTIC = 'deterministic'
    PROBABILISTIC = 'probabilistic'
    NO_MATCH = 'no_match'


@dataclass(frozen=True)
class OrgPolicies:
    """Per-organization thresholds. Defaults come from MemoryConfig/RetrievalConfig."""
    classification_threshold: float = 0.5
    summary_interval_turns: int = 10
    merge_threshold: float = 0.85
    trigger_probabilistic_threshold: float = 0.75
    correlator_confidence_threshold: float = 0.8
    retrieval_total_limit: int = 20
    retrieval_per_collection_top_k: int = 10
    retrieval_timeout_seconds: float = 2.0
    episodic_recency_boost: float = 0.05
    episodic_recency_window_days: int = 30

    @classmethod
    def from_config(cls, app_config: AppConfig) -> 'OrgPolicies':
        """Build default policies from the application configuration."""
        memory = app_config.memory
        retrieval = app_config.retrieval
        return cls(classification_threshold=memory.classification_threshold,
                   summary_interval_turns=memory.summary_interval_turns,
                   merge_threshold=memory.merge_threshold,
                   trigger_probabilistic_threshold=memory.trigger_probabilistic_threshold,
                   correlator_confidence_threshold=memory.correlator_confidence_threshold,
                   retrieval_total_limit=retrieval.total_limit,
                   retrieval_per_collection_top_k=retrieval.per_collection_top_k,
                   retrieval_timeout_seconds=retrieval.timeout_seconds,
                   episodic_recency_boost=retrieval.episodic_recency_boost,
                   episodic_recency_window_days=retrieval.episodic_recency_window_days)


@dataclass(frozen=True)
class OrgContext:
    """Isolation root passed explicitly through every call."""
    org_id: str
    policies: OrgPolicies = field(default_factory=OrgPolicies)


@dataclass(frozen=True)
class UserContext:
    """Resolved caller identity for one turn."""
    user_id: Optional[str] = None
    is_registered: bool = False

    @property
    def sees_user_scope(self) -> bool:
        return self.is_registered and bool(self.user_id)


@dataclass
class Checkpoint:
    """Persisted STM snapshot of one conversation thread.

    `version` is 0 for a thread that has never been saved. `summary_cursor` marks
    the position in `message_log` up to which content has already been classified.
    """
    thread_id: str
    org_id: str
    user_id: Optional[str] = None
    message_log: List[Dict[str, Any]] = field(default_factory=list)
    workflow_variables: Dict[str, Any] = field(default_factory=dict)
    version: int = 0
    turns_since_summary: int = 0
    summary_cursor: int = 0

    @property
    def is_new(self) -> bool:
        return self.version == 0

    def append_message(self, role: str, content: str, **extra: Any) -> None:
        self.message_log.append({'role': role, 'content': content, 'timestamp': to_iso(utc_now()), **extra})

    def unsummarized_window(self) -> List[Dict[str, Any]]:
        return list(self.message_log[self.summary_cursor:])

    def mark_summarized(self) -> None:
        self.summary_cursor = len(self.message_log)
        self.turns_since_summary = 0

    def snapshot(self) -> 'Checkpoint':
        """Return an independent deep copy for handoff to background work."""
        return copy.deepcopy(self)


@dataclass
class CandidateMemory:
    """Classifier output awaiting embedding and storage."""
    org_id: str
    type: MemoryType
    scope: MemoryScope
    text: str
    confidence: float
    user_id: Optional[str] = None
    source_thread_id: Optional[str] = None
    attempts: int = 0


@dataclass
class MemoryRecord:
    """Durable, searchable LTM record stored in one (org_id, type) collection."""
    id: str
    org_id: str
    type: MemoryType
    scope: MemoryScope
    text: str
    embedding: List[float]
    confidence: float
    created_at: datetime
    updated_at: datetime
    user_id: Optional[str] = None
    source_thread_id: Optional[str] = None

    def __post_init__(self):
        if self.scope == MemoryScope.USER and not self.user_id:
            raise ValueError(f'User-scoped memory {self.id} requires a user_id')
        if self.scope == MemoryScope.ORGANIZATION and self.user_id:
            raise ValueError(f'Organization-scoped memory {self.id} must not carry a user_id')

    def to_document(self) -> Dict[str, Any]:
        """Serialize to a vector store document."""
        return {
            'id': self.id,
            'org_id': self.org_id,
            'memory_type': self.type.value,
            'scope': self.scope.value,
            'user_id': self.user_id,
            'text': self.text,
            'embedding': list(self.embedding),
            'confidence': self.confidence,
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at),
            'source_thread_id': self.source_thread_id
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'MemoryRecord':
        """Deserialize from a vector store document."""
        return cls(id=doc['id'],
                   org_id=doc['org_id'],
                   type=MemoryType(doc['memory_type']),
                   scope=MemoryScope(doc['scope']),
                   user_id=doc.get('user_id') or None,
                   text=doc.get('text', ''),
                   embedding=list(doc.get('embedding') or []),
                   confidence=float(doc.get('confidence', 0.0)),
                   created_at=parse_iso(doc.get('created_at')),
                   updated_at=parse_iso(doc.get('updated_at')),
                   source_thread_id=doc.get('source_thread_id'))


@dataclass(frozen=True)
class CollectionKey:
    """Address of one vector collection: always (org_id, memory_type)."""
    org_id: Optional[str]
    memory_type: MemoryType

    def __str__(self) -> str:
        return f'{self.org_id}/{self.memory_type.value}'


@dataclass(frozen=True)
class SearchFilter:
    """Metadata restriction applied inside one collection search.

    A record passes when its scope is listed in `scopes` and, for user-scoped
    records, its `user_id` equals the filter's `user_id`.
    """
    scopes: Tuple[MemoryScope, ...] = (MemoryScope.ORGANIZATION, )
    user_id: Optional[str] = None

    def __post_init__(self):
        if MemoryScope.USER in self.scopes and not self.user_id:
            raise ValueError('A user-scope filter requires a user_id')

    @classmethod
    def organization_only(cls) -> 'SearchFilter':
        return cls(scopes=(MemoryScope.ORGANIZATION, ))

    @classmethod
    def for_user(cls, user_id: str, include_organization: bool = True) -> 'SearchFilter':
        scopes = (MemoryScope.USER, MemoryScope.ORGANIZATION) if include_organization else (MemoryScope.USER, )
        return cls(scopes=scopes, user_id=user_id)

    def matches(self, record: MemoryRecord) -> bool:
        if record.scope not in self.scopes:
            return False
        if record.scope == MemoryScope.USER:
            return record.user_id == self.user_id
        return True

    def cache_token(self) -> str:
        return f"{','.join(sorted(s.value for s in self.scopes))}|{self.user_id or ''}"


@dataclass
class ScoredRecord:
    """A record with its raw similarity and final ranking score."""
    record: MemoryRecord
    score: float
    rank_score: float = 0.0


@dataclass
class RetrievalResult:
    """Merged, ranked output of one retrieval fan-out."""
    org_id: str
    query_text: str
    records: List[ScoredRecord] = field(default_factory=list)
    timed_out: List[MemoryType] = field(default_factory=list)
    failed: List[MemoryType] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.timed_out or self.failed)

    def of_type(self, memory_type: MemoryType) -> List[ScoredRecord]:
        return [item for item in self.records if item.record.type == memory_type]

    def texts(self) -> List[str]:
        return [item.record.text for item in self.records]


@dataclass
class TriggerPattern:
    """Known intent phrase for an organization, reinforced by ability outcomes."""
    org_id: str
    phrase: str
    match_kind: MatchKind = MatchKind.DETERMINISTIC
    success_count: int = 0
    failure_count: int = 0

    @property
    def outcome_factor(self) -> float:
        """Multiplier in (0, 1]; 1.0 with no history, shrinking with failures."""
        return (self.success_count + 1) / (self.success_count + self.failure_count + 1)


@dataclass(frozen=True)
class TriggerMatch:
    """Result of trigger matching for one input."""
    kind: MatchKind
    confidence: float = 0.0
    phrase: Optional[str] = None
    source: Optional[str] = None

    @property
    def requires_confirmation(self) -> bool:
        return self.kind == MatchKind.PROBABILISTIC

    @property
    def matched(self) -> bool:
        return self.kind != MatchKind.NO_MATCH

    @classmethod
    def no_match(cls) -> 'TriggerMatch':
        return cls(kind=MatchKind.NO_MATCH)


@dataclass
class AbilityOutcome:
    """Report from the ability execution layer after an ability completes."""
    ability_id: str
    outcome: str  # 'success' or 'failure'
    variables: Dict[str, Any] = field(default_factory=dict)
    trigger_phrase: Optional[str] = None

    def __post_init__(self):
        if self.outcome not in ('success', 'failure'):
            raise ValueError(f"Ability outcome must be 'success' or 'failure', got {self.outcome!r}")

    @property
    def succeeded(self) -> bool:
        return self.outcome == 'success'


@dataclass(frozen=True)
class CorrelationResult:
    """Background correlator verdict for one turn."""
    thread_id: str
    ability_id: Optional[str]
    step: Optional[str]
    step_index: int
    confidence: float


@dataclass
class SummaryOutcome:
    """What one classification cycle produced and stored."""
    thread_id: str
    candidates: List[CandidateMemory] = field(default_factory=list)
    records: List[MemoryRecord] = field(default_factory=list)


@dataclass
class TurnResult:
    """Everything the caller needs after one orchestrated turn.

    `summary` and `correlation` are futures of background work that may still be
    running when the turn returns.
    """
    response: str
    checkpoint: Checkpoint
    retrieval: RetrievalResult
    trigger: TriggerMatch
    summary: Optional[Future] = None
    correlation: Optional[Future] = None

    @property
    def summarized(self) -> bool:
        return self.summary is not None
