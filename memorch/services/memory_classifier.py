"""
Memory Classifier: turns a conversation window into typed, scoped candidate memories.

The extraction step is delegated to an extractor (Bedrock LLM in production);
type/scope normalization and confidence gating are pure functions over the
extracted items so the policy stays testable without a model.
"""

from typing import Any, Dict, List, Optional

from ..models.core import CandidateMemory, MemoryScope, MemoryType, OrgContext, UserContext
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

CLASSIFIABLE_TYPES = (MemoryType.SEMANTIC, MemoryType.EPISODIC, MemoryType.PROCEDURAL)


class ClassificationError(Exception):
    """Custom exception for memory classification errors."""
    pass


def render_window(window: List[Dict[str, Any]]) -> str:
    """Render message log entries as a plain transcript."""
    lines = []
    for msg in window:
        content = str(msg.get('content', '')).strip()
        if not content:
            continue
        lines.append(f"{str(msg.get('role', 'user')).capitalize()}:\n{content}")
    return '\n\n'.join(lines)


def parse_memory_type(value: Any) -> Optional[MemoryType]:
    """Map an extractor label onto a classifiable memory type, or None."""
    try:
        memory_type = MemoryType(str(value).strip().lower())
    except ValueError:
        return None
    return memory_type if memory_type in CLASSIFIABLE_TYPES else None


def parse_confidence(value: Any) -> float:
    """Coerce a self-assessed confidence into [0, 1]; invalid values become 0.0."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return confidence if 0.0 <= confidence <= 1.0 else 0.0


def infer_scope(memory_type: MemoryType, proposed: Any, user: UserContext) -> Optional[MemoryScope]:
    """Decide the scope of a candidate.

    Returns None when the candidate must be dropped: user-specific memory about an
    unregistered caller has no user to attach to and may not leak to the organization.
    """
    try:
        proposed_scope = MemoryScope(str(proposed).strip().lower()) if proposed else None
    except ValueError:
        proposed_scope = None

    if memory_type == MemoryType.EPISODIC:
        scope = MemoryScope.USER
    elif memory_type == MemoryType.PROCEDURAL:
        scope = proposed_scope or MemoryScope.ORGANIZATION
    else:
        scope = proposed_scope or MemoryScope.USER

    if scope == MemoryScope.USER and not user.sees_user_scope:
        return None
    return scope


def build_candidate(item: Dict[str, Any], org: OrgContext, user: UserContext, thread_id: Optional[str]) -> Optional[CandidateMemory]:
    """Turn one extracted item into a CandidateMemory, or None if it is unusable."""
    if not isinstance(item, dict):
        return None

    text = str(item.get('text', '')).strip()
    memory_type = parse_memory_type(item.get('type'))
    if not text or memory_type is None:
        return None

    scope = infer_scope(memory_type, item.get('scope'), user)
    if scope is None:
        logger.debug(f'Dropping user-scoped {memory_type.value} candidate for unregistered caller')
        return None

    return CandidateMemory(org_id=org.org_id,
                           user_id=user.user_id if scope == MemoryScope.USER else None,
                           type=memory_type,
                           scope=scope,
                           text=text,
                           confidence=parse_confidence(item.get('confidence')),
                           source_thread_id=thread_id)


def gate_by_confidence(candidates: List[CandidateMemory], threshold: float) -> List[CandidateMemory]:
    """Keep candidates whose confidence is at least `threshold`."""
    kept = [c for c in candidates if c.confidence >= threshold]
    if len(kept) < len(candidates):
        logger.debug(f'Dropped {len(candidates) - len(kept)} candidates below confidence {threshold}')
    return kept


class BedrockMemoryExtractor:
    """Extract memory items from a transcript with a Bedrock LLM."""

    SYSTEM_PROMPT = """
You are a memory curation system for a multi-tenant assistant. Read the conversation and extract memories worth keeping.

Memory types:
- "semantic": a durable fact about the user or the organization (preferences, identifiers, policies)
- "episodic": a record of what happened in this interaction (an event or an outcome)
- "procedural": a successful multi-step sequence worth reusing for similar requests

Scope:
- "user" when the memory concerns the specific caller
- "organization" when it is true for everyone in the organization

Return a JSON array with this exact format:
```json
[
  {
    "type": "semantic|episodic|procedural",
    "scope": "user|organization",
    "text": "self-contained statement of the memory",
    "confidence": 0.9
  }
]
```

Confidence is between 0.0 and 1.0. Write each text so it is understandable without the conversation.
Return empty array [] if nothing is worth remembering."""

    def __init__(self, llm: BedrockLLM):
        self.llm = llm

    def extract(self, window: List[Dict[str, Any]], org: OrgContext, user: UserContext) -> List[Dict[str, Any]]:
        """
        Args:
            window: Ordered message log entries
            org: Organization context
            user: Caller context

        Returns:
            Raw extracted items

        Raises:
            ClassificationError: If the model call fails or returns a non-list
        """
        transcript = render_window(window)
        if not transcript:
            return []

        try:
            items = self.llm.complete_json(self.SYSTEM_PROMPT, f'Extract memories from the conversation:\n{transcript}')
        except BedrockLLMError as e:
            raise ClassificationError(f'Memory extraction failed: {e}')

        if not isinstance(items, list):
            raise ClassificationError(f'Expected list of memories, got {type(items).__name__}')
        return items


class MemoryClassifier:
    """Classify conversation windows into candidate memories above a confidence threshold."""

    def __init__(self, extractor):
        """
        Args:
            extractor: Object exposing `extract(window, org, user) -> List[dict]`
        """
        self.extractor = extractor
        logger.info('Initialized MemoryClassifier')

    def classify(self,
                 window: List[Dict[str, Any]],
                 org: OrgContext,
                 user: UserContext,
                 thread_id: Optional[str] = None) -> List[CandidateMemory]:
        """
        Classify a conversation window.

        Extraction failures degrade to no candidates; they never fail the turn.

        Args:
            window: Ordered message log entries
            org: Organization context carrying the classification threshold
            user: Caller context deciding which scopes are allowed
            thread_id: Source thread recorded on every candidate

        Returns:
            Candidates at or above org.policies.classification_threshold
        """
        if not window:
            return []

        try:
            items = self.extractor.extract(window, org, user)
        except ClassificationError as e:
            logger.warning(f'Classification skipped for thread {thread_id}: {e}')
            return []

        candidates = [c for c in (build_candidate(item, org, user, thread_id) for item in items) if c is not None]
        candidates = gate_by_confidence(candidates, org.policies.classification_threshold)

        logger.debug(f'Classified {len(window)} messages into {len(candidates)} candidates for org {org.org_id}')
        return candidates
