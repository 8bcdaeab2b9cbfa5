"""
Checkpoint Store: durable, version-checked STM snapshots, one row per conversation thread.
"""

import dataclasses
import json
import sqlite3
import threading
from typing import Optional

from ..models.core import Checkpoint
from ..models.errors import CheckpointNotFound, CheckpointStoreUnavailable, IsolationViolation, VersionConflict
from ..utils.config import CheckpointConfig
from ..utils.logging_config import get_logger, log_security_event
from ..utils.timestamp_utils import to_iso, utc_now

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS checkpoints (
    thread_id           TEXT PRIMARY KEY,
    org_id              TEXT NOT NULL,
    user_id             TEXT,
    message_log         TEXT NOT NULL,
    workflow_variables  TEXT NOT NULL,
    turns_since_summary INTEGER NOT NULL DEFAULT 0,
    summary_cursor      INTEGER NOT NULL DEFAULT 0,
    version             INTEGER NOT NULL,
    updated_at          TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_checkpoints_org ON checkpoints(org_id);
"""


def connect_sqlite(db_path: str) -> sqlite3.Connection:
    """Open a connection shared across worker threads (callers serialize with a lock)."""
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


class CheckpointStore:
    """SQLite checkpoint store enforcing optimistic concurrency on `version`.

    A save succeeds only when the stored version equals the version the caller
    read; the stored version is then incremented by exactly one.
    """

    def __init__(self, config: CheckpointConfig):
        self.config = config
        self._lock = threading.RLock()
        try:
            self._conn = connect_sqlite(config.db_path)
            with self._conn:
                self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            logger.error(f'Failed to open checkpoint store at {config.db_path}: {e}')
            raise CheckpointStoreUnavailable(f'Checkpoint store unavailable: {e}')

        logger.info(f'Initialized CheckpointStore at {config.db_path}')

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _row_to_checkpoint(self, row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(thread_id=row['thread_id'],
                          org_id=row['org_id'],
                          user_id=row['user_id'],
                          message_log=json.loads(row['message_log']),
                          workflow_variables=json.loads(row['workflow_variables']),
                          version=row['version'],
                          turns_since_summary=row['turns_since_summary'],
                          summary_cursor=row['summary_cursor'])

    def get(self, thread_id: str) -> Checkpoint:
        """
        Fetch the stored checkpoint for a thread.

        Raises:
            CheckpointNotFound: If the thread has never been saved
            CheckpointStoreUnavailable: On persistence failure
        """
        try:
            with self._lock:
                row = self._conn.execute('SELECT * FROM checkpoints WHERE thread_id = ?', (thread_id, )).fetchone()
        except sqlite3.Error as e:
            logger.error(f'Error loading checkpoint {thread_id}: {e}')
            raise CheckpointStoreUnavailable(f'Failed to load checkpoint: {e}')

        if row is None:
            raise CheckpointNotFound(thread_id)
        return self._row_to_checkpoint(row)

    def load(self, thread_id: str, org_id: str, user_id: Optional[str] = None) -> Checkpoint:
        """
        Load a thread's checkpoint, or an empty version-0 checkpoint for a new thread.

        Args:
            thread_id: Conversation thread
            org_id: Organization the caller is acting for
            user_id: Resolved user, used only when starting a new thread

        Raises:
            IsolationViolation: If the thread belongs to another organization
            CheckpointStoreUnavailable: On persistence failure
        """
        try:
            checkpoint = self.get(thread_id)
        except CheckpointNotFound:
            logger.debug(f'No checkpoint for thread {thread_id}, starting empty')
            return Checkpoint(thread_id=thread_id, org_id=org_id, user_id=user_id)

        if checkpoint.org_id != org_id:
            log_security_event('isolation_violation',
                               operation='checkpoint_load',
                               thread_id=thread_id,
                               requested_org=org_id,
                               owner_org=checkpoint.org_id)
            raise IsolationViolation(f'Thread {thread_id} belongs to another organization')
        return checkpoint

    def _stored_version(self, thread_id: str) -> Optional[int]:
        row = self._conn.execute('SELECT version FROM checkpoints WHERE thread_id = ?', (thread_id, )).fetchone()
        return row['version'] if row else None

    def save(self, checkpoint: Checkpoint) -> Checkpoint:
        """
        Persist a checkpoint if nobody else saved the thread since it was read.

        Args:
            checkpoint: Checkpoint carrying the version the caller last read

        Returns:
            A copy of the checkpoint with the new stored version

        Raises:
            VersionConflict: If the stored version differs from checkpoint.version
            CheckpointStoreUnavailable: On persistence failure
        """
        new_version = checkpoint.version + 1
        params = {
            'thread_id': checkpoint.thread_id,
            'org_id': checkpoint.org_id,
            'user_id': checkpoint.user_id,
            'message_log': json.dumps(checkpoint.message_log, default=str),
            'workflow_variables': json.dumps(checkpoint.workflow_variables, default=str),
            'turns_since_summary': checkpoint.turns_since_summary,
            'summary_cursor': checkpoint.summary_cursor,
            'version': new_version,
            'expected_version': checkpoint.version,
            'updated_at': to_iso(utc_now())
        }

        try:
            with self._lock, self._conn:
                if checkpoint.version == 0:
                    cursor = self._conn.execute(
                        'INSERT OR IGNORE INTO checkpoints (thread_id, org_id, user_id, message_log, workflow_variables, '
                        'turns_since_summary, summary_cursor, version, updated_at) VALUES (:thread_id, :org_id, :user_id, '
                        ':message_log, :workflow_variables, :turns_since_summary, :summary_cursor, :version, :updated_at)', params)
                else:
                    cursor = self._conn.execute(
                        'UPDATE checkpoints SET user_id = :user_id, message_log = :message_log, '
                        'workflow_variables = :workflow_variables, turns_since_summary = :turns_since_summary, '
                        'summary_cursor = :summary_cursor, version = :version, updated_at = :updated_at '
                        'WHERE thread_id = :thread_id AND org_id = :org_id AND version = :expected_version', params)

                if cursor.rowcount != 1:
                    stored = self._stored_version(checkpoint.thread_id)
                    logger.debug(f'Checkpoint save for {checkpoint.thread_id} rejected '
                                 f'(expected {checkpoint.version}, stored {stored})')
                    raise VersionConflict(checkpoint.thread_id, checkpoint.version, stored)

        except sqlite3.Error as e:
            logger.error(f'Error saving checkpoint {checkpoint.thread_id}: {e}')
            raise CheckpointStoreUnavailable(f'Failed to save checkpoint: {e}')

        logger.debug(f'Saved checkpoint {checkpoint.thread_id} at version {new_version}')
        saved = checkpoint.snapshot()
        return dataclasses.replace(saved, version=new_version)

    def discard(self, thread_id: str, expected_version: Optional[int] = None) -> bool:
        """
        Remove a thread's checkpoint after its content moved to LTM.

        Args:
            thread_id: Conversation thread
            expected_version: Only delete if the stored version still equals this

        Returns:
            True if a checkpoint was removed
        """
        try:
            with self._lock, self._conn:
                if expected_version is None:
                    cursor = self._conn.execute('DELETE FROM checkpoints WHERE thread_id = ?', (thread_id, ))
                else:
                    cursor = self._conn.execute('DELETE FROM checkpoints WHERE thread_id = ? AND version = ?',
                                                (thread_id, expected_version))
        except sqlite3.Error as e:
            logger.error(f'Error discarding checkpoint {thread_id}: {e}')
            raise CheckpointStoreUnavailable(f'Failed to discard checkpoint: {e}')

        removed = cursor.rowcount == 1
        logger.debug(f'Discard of checkpoint for thread {thread_id}: {"removed" if removed else "kept"}')
        return removed

    def health_check(self) -> bool:
        try:
            with self._lock:
                self._conn.execute('SELECT 1').fetchone()
            return True
        except sqlite3.Error as e:
            logger.error(f'Checkpoint store health check failed: {e}')
            return False
