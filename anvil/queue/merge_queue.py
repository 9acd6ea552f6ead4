"""Single-worker merge queue.

Agents are merged strictly one at a time in queue order. Each entry is first
rebased onto the trunk (so conflicts surface against the latest trunk) and
then merged. Queue state lives in the ``merge_queue`` table so it survives a
restart; ``recover()`` puts entries that were mid-flight back in line.
"""

import logging
import threading
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from anvil.core.database import DatabaseManager, MergeQueueEntry, get_db
from anvil.core.exceptions import QueueEntryNotFoundError, WorkspaceNotFoundError
from anvil.core.naming import validate_agent_id
from anvil.core.worktree_manager import WorktreeManager

logger = logging.getLogger(__name__)


class QueueStatus(Enum):
    QUEUED = "queued"
    SYNCING = "syncing"
    MERGING = "merging"
    MERGED = "merged"
    CONFLICT = "conflict"
    FAILED = "failed"


ACTIVE_STATUSES = (QueueStatus.SYNCING.value, QueueStatus.MERGING.value)
FINISHED_STATUSES = (QueueStatus.CONFLICT.value, QueueStatus.FAILED.value, QueueStatus.MERGED.value)


def _entry_to_dict(entry: MergeQueueEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "agent_id": entry.agent_id,
        "status": entry.status,
        "position": entry.position,
        "attempts": entry.attempts,
        "last_error": entry.last_error,
        "conflicting_paths": list(entry.conflicting_paths or []),
        "enqueued_at": entry.enqueued_at.isoformat() if entry.enqueued_at else None,
        "merged_at": entry.merged_at.isoformat() if entry.merged_at else None,
    }


class MergeQueue:
    """Orders merges into one trunk and runs them one by one."""

    def __init__(self, manager: WorktreeManager, db_manager: DatabaseManager):
        self.manager = manager
        self.db_manager = db_manager
        self._processing = threading.Lock()

    # ---- queue management ----------------------------------------------

    def enqueue(self, agent_id: str) -> Dict[str, Any]:
        """Append the agent's workspace to the queue.

        Returns the existing entry unchanged when the agent is already waiting or
        in flight. A finished entry (merged, conflict or failed) goes back in
        line at the end, so follow-up work can be merged again.

        Raises:
            WorkspaceNotFoundError: the agent has no live workspace
        """
        validate_agent_id(agent_id)
        if self.manager.get_worktree(agent_id) is None:
            raise WorkspaceNotFoundError(f"No workspace for agent {agent_id}")

        with get_db(self.db_manager) as session:
            existing = session.query(MergeQueueEntry).filter_by(agent_id=agent_id).first()
            if existing:
                if existing.status in FINISHED_STATUSES:
                    self._move_to_back(session, existing)
                    logger.info(f"[MERGE-QUEUE] {agent_id} re-enqueued at position {existing.position}")
                return _entry_to_dict(existing)

            max_position = session.query(func.max(MergeQueueEntry.position)).scalar() or 0
            entry = MergeQueueEntry(
                id=str(uuid.uuid4()),
                agent_id=agent_id,
                status=QueueStatus.QUEUED.value,
                position=max_position + 1,
                attempts=0,
            )
            session.add(entry)
            session.flush()
            logger.info(f"[MERGE-QUEUE] {agent_id} enqueued at position {entry.position}")
            return _entry_to_dict(entry)

    def remove(self, agent_id: str) -> bool:
        with get_db(self.db_manager) as session:
            entry = session.query(MergeQueueEntry).filter_by(agent_id=agent_id).first()
            if not entry:
                return False
            session.delete(entry)
        logger.info(f"[MERGE-QUEUE] Removed {agent_id} from queue")
        return True

    def get_queue(self) -> List[Dict[str, Any]]:
        """All entries ordered by position."""
        with get_db(self.db_manager) as session:
            entries = session.query(MergeQueueEntry).order_by(MergeQueueEntry.position).all()
            return [_entry_to_dict(e) for e in entries]

    def get_entry(self, agent_id: str) -> Optional[Dict[str, Any]]:
        with get_db(self.db_manager) as session:
            entry = session.query(MergeQueueEntry).filter_by(agent_id=agent_id).first()
            return _entry_to_dict(entry) if entry else None

    def is_queued(self, agent_id: str) -> bool:
        return self.get_entry(agent_id) is not None

    def reorder(self, agent_id: str, new_position: int) -> bool:
        with get_db(self.db_manager) as session:
            entry = session.query(MergeQueueEntry).filter_by(agent_id=agent_id).first()
            if not entry:
                return False
            entry.position = new_position
        logger.info(f"[MERGE-QUEUE] Moved {agent_id} to position {new_position}")
        return True

    def requeue(self, agent_id: str) -> Dict[str, Any]:
        """Put a finished (merged, conflicted or failed) entry back in line, at the end.

        Raises:
            QueueEntryNotFoundError: the agent is not in the queue
        """
        with get_db(self.db_manager) as session:
            entry = session.query(MergeQueueEntry).filter_by(agent_id=agent_id).first()
            if not entry:
                raise QueueEntryNotFoundError(f"{agent_id} is not in the merge queue")
            if entry.status in FINISHED_STATUSES:
                self._move_to_back(session, entry)
                logger.info(f"[MERGE-QUEUE] Requeued {agent_id} at position {entry.position}")
            return _entry_to_dict(entry)

    def _move_to_back(self, session, entry: MergeQueueEntry) -> None:
        max_position = session.query(func.max(MergeQueueEntry.position)).scalar() or 0
        entry.status = QueueStatus.QUEUED.value
        entry.position = max_position + 1
        entry.last_error = None
        entry.conflicting_paths = []
        entry.merged_at = None
        session.flush()

    def recover(self) -> int:
        """Reset entries left syncing or merging by a dead process. Returns the count."""
        with get_db(self.db_manager) as session:
            entries = session.query(MergeQueueEntry).filter(MergeQueueEntry.status.in_(ACTIVE_STATUSES)).all()
            for entry in entries:
                entry.status = QueueStatus.QUEUED.value
        if entries:
            logger.warning(f"[MERGE-QUEUE] Recovered {len(entries)} in-flight entries")
        return len(entries)

    # ---- processing ----------------------------------------------------

    def process_next(self) -> Optional[Dict[str, Any]]:
        """Sync then merge the lowest-position queued entry.

        Returns the entry after processing, or None when nothing ran because
        the queue is empty or another entry is already in flight.
        """
        if not self._processing.acquire(blocking=False):
            return None
        try:
            agent_id = self._claim_next()
            if agent_id is None:
                return None
            self._process(agent_id)
            return self.get_entry(agent_id)
        finally:
            self._processing.release()

    def run_pending(self) -> List[Dict[str, Any]]:
        """Process queued entries until none are left."""
        processed = []
        while True:
            entry = self.process_next()
            if entry is None:
                return processed
            processed.append(entry)

    def _claim_next(self) -> Optional[str]:
        with get_db(self.db_manager) as session:
            in_flight = session.query(MergeQueueEntry).filter(MergeQueueEntry.status.in_(ACTIVE_STATUSES)).count()
            if in_flight:
                logger.debug(f"[MERGE-QUEUE] {in_flight} entry in flight; not starting another")
                return None

            entry = (
                session.query(MergeQueueEntry)
                .filter_by(status=QueueStatus.QUEUED.value)
                .order_by(MergeQueueEntry.position)
                .first()
            )
            if entry is None:
                return None

            entry.status = QueueStatus.SYNCING.value
            entry.attempts = (entry.attempts or 0) + 1
            return entry.agent_id

    def _process(self, agent_id: str) -> None:
        logger.info(f"[MERGE-QUEUE] Processing {agent_id}")
        try:
            sync = self.manager.update_worktree(agent_id)
            if not sync.success:
                self._update(agent_id, QueueStatus.CONFLICT, sync.message, sync.conflicting_paths)
                return

            self._update(agent_id, QueueStatus.MERGING)
            outcome = self.manager.merge_branch(agent_id)
        except Exception as e:
            logger.error(f"[MERGE-QUEUE] {agent_id} failed: {e}")
            self._update(agent_id, QueueStatus.FAILED, str(e))
            raise

        if outcome.success:
            self._update(agent_id, QueueStatus.MERGED, merged=True)
            logger.info(f"[MERGE-QUEUE] {agent_id}: {outcome.message}")
        else:
            self._update(agent_id, QueueStatus.CONFLICT, outcome.message, outcome.conflicting_paths)

    def _update(
        self,
        agent_id: str,
        status: QueueStatus,
        error: Optional[str] = None,
        conflicting_paths: Optional[List[str]] = None,
        merged: bool = False,
    ) -> None:
        with get_db(self.db_manager) as session:
            entry = session.query(MergeQueueEntry).filter_by(agent_id=agent_id).first()
            if entry is None:
                # Removed while it was being processed
                logger.warning(f"[MERGE-QUEUE] {agent_id} vanished from the queue mid-processing")
                return
            entry.status = status.value
            entry.last_error = error
            entry.conflicting_paths = list(conflicting_paths or [])
            if merged:
                entry.merged_at = datetime.utcnow()
