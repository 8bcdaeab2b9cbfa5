"""
MCP interface layer using fastmcp for the ability/tool execution layer.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from memorch.models.core import AbilityOutcome, MatchKind, OrgContext, OrgPolicies, UserContext
from memorch.models.errors import IsolationViolation, MemoryOrchestrationError
from memorch.services.orchestrator import ConversationOrchestrator
from memorch.utils.config import config
from memorch.utils.health_check import get_health_status
from memorch.utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Memory Orchestrator')

_orchestrator: Optional[ConversationOrchestrator] = None


def _no_response(text, retrieval, trigger, checkpoint) -> str:
    raise RuntimeError('Response generation is not served over MCP')


def get_orchestrator() -> ConversationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ConversationOrchestrator.from_config(config, responder=_no_response)
    return _orchestrator


def _org(org_id: str) -> OrgContext:
    if not org_id or not org_id.strip():
        raise ValueError('Organization ID is required')
    return OrgContext(org_id=org_id, policies=OrgPolicies.from_config(config))


@mcp.tool()
def retrieve_memories(org_id: str, query: str, user_id: str = '', is_registered: bool = False) -> List[Dict[str, Any]]:
    """Retrieve memories relevant to a query within one organization.

    Args:
        org_id: Organization ID
        query: Natural language query
        user_id: Resolved user ID, empty for anonymous callers
        is_registered: Whether the caller is a registered user

    Returns:
        List of {id, type, scope, text, score}
    """
    try:
        if not query or not query.strip():
            return []

        user = UserContext(user_id=user_id or None, is_registered=is_registered)
        result = get_orchestrator().retriever.retrieve(query, _org(org_id), user)
        return [{
            'id': item.record.id,
            'type': item.record.type.value,
            'scope': item.record.scope.value,
            'text': item.record.text,
            'score': round(item.rank_score, 4)
        } for item in result.records]

    except IsolationViolation:
        raise
    except MemoryOrchestrationError as e:
        logger.error(f'Memory retrieval failed over MCP: {e}')
        raise Exception(f'Memory retrieval failed: {e}')


@mcp.tool()
def match_trigger(org_id: str, text: str) -> Dict[str, Any]:
    """Match user input against the organization's known intents.

    Returns:
        {kind, confidence, phrase, requires_confirmation}
    """
    match = get_orchestrator().matcher.match(text, _org(org_id))
    return {
        'kind': match.kind.value,
        'confidence': round(match.confidence, 4),
        'phrase': match.phrase,
        'requires_confirmation': match.requires_confirmation
    }


@mcp.tool()
def register_trigger(org_id: str, phrase: str, deterministic: bool = True) -> bool:
    """Register a trigger phrase for an organization."""
    kind = MatchKind.DETERMINISTIC if deterministic else MatchKind.PROBABILISTIC
    get_orchestrator().matcher.store.ensure_pattern(_org(org_id).org_id, phrase, kind)
    return True


@mcp.tool()
def start_ability(org_id: str, thread_id: str, ability_id: str, steps: List[str], user_id: str = '') -> int:
    """Declare the ability now running on a thread and its expected steps.

    Returns:
        New checkpoint version
    """
    user = UserContext(user_id=user_id or None, is_registered=bool(user_id))
    return get_orchestrator().start_ability(_org(org_id), thread_id, user, ability_id, steps).version


@mcp.tool()
def report_ability_outcome(org_id: str,
                           thread_id: str,
                           ability_id: str,
                           outcome: str,
                           variables: Optional[Dict[str, Any]] = None,
                           trigger_phrase: str = '',
                           user_id: str = '') -> int:
    """Report an ability result back to the memory engine.

    Returns:
        New checkpoint version
    """
    report = AbilityOutcome(ability_id=ability_id, outcome=outcome, variables=variables or {}, trigger_phrase=trigger_phrase or None)
    user = UserContext(user_id=user_id or None, is_registered=bool(user_id))
    return get_orchestrator().report_ability_outcome(_org(org_id), thread_id, user, report).version


@mcp.tool()
def forget_user(org_id: str, user_id: str) -> int:
    """Delete all user-scoped memories of a user. Returns the number removed."""
    if not user_id or not user_id.strip():
        raise ValueError('User ID is required')
    return get_orchestrator().forget_user(_org(org_id), user_id)


@mcp.tool()
def health() -> Dict[str, Any]:
    """Report component health."""
    return get_health_status(config)


if __name__ == '__main__':
    mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
