"""
Error taxonomy for the memory orchestration engine.
"""

from typing import Optional


class MemoryOrchestrationError(Exception):
    """Base exception for memory orchestration errors."""
    pass


class CheckpointNotFound(MemoryOrchestrationError):
    """Raised when a thread has no stored checkpoint."""

    def __init__(self, thread_id: str):
        super().__init__(f'No checkpoint stored for thread {thread_id}')
        self.thread_id = thread_id


class VersionConflict(MemoryOrchestrationError):
    """Raised when a checkpoint save references a stale version."""

    def __init__(self, thread_id: str, expected_version: int, stored_version: Optional[int]):
        super().__init__(f'Checkpoint version conflict for thread {thread_id}: '
                         f'expected {expected_version}, stored {stored_version}')
        self.thread_id = thread_id
        self.expected_version = expected_version
        self.stored_version = stored_version


class CheckpointStoreUnavailable(MemoryOrchestrationError):
    """Raised when the durable checkpoint store cannot be reached."""
    pass


class EmbeddingFailure(MemoryOrchestrationError):
    """Raised when the embedding provider cannot embed a text."""
    pass


class VectorStoreError(MemoryOrchestrationError):
    """Raised when the vector store service fails."""
    pass


class IsolationViolation(MemoryOrchestrationError):
    """Raised on any attempt to cross an organization boundary."""
    pass


class TurnFailure(MemoryOrchestrationError):
    """Raised when a conversation turn cannot be completed."""
    pass
