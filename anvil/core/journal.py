"""Persistent record of workspace lifetimes and reconciliation attempts.

A merge is journaled as 'started' before git touches the trunk and moved to a
terminal status afterwards. A 'started' row that outlives its process marks a
merge whose outcome was never observed (at-most-once semantics).
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from anvil.core.database import DatabaseManager, ReconciliationRecord, WorkspaceRecord, get_db
from anvil.core.models import (
    ReconciliationKind,
    ReconciliationOutcome,
    ReconciliationStatus,
    Workspace,
)

logger = logging.getLogger(__name__)


def _record_to_dict(record: ReconciliationRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "agent_id": record.agent_id,
        "operation": record.operation,
        "status": record.status,
        "commits_merged": record.commits_merged or 0,
        "conflicting_paths": list(record.conflicting_paths or []),
        "message": record.message,
        "trunk_tip_before": record.trunk_tip_before,
        "merge_commit_sha": record.merge_commit_sha,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
    }


class ReconciliationJournal:
    """Journal backed by the SQLAlchemy models in anvil.core.database."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        # SQLite behind a StaticPool shares one connection between threads
        self._lock = threading.Lock()

    def workspace_created(self, workspace: Workspace, base_commit_sha: Optional[str]) -> None:
        with self._lock, get_db(self.db_manager) as session:
            session.add(WorkspaceRecord(
                id=str(uuid.uuid4()),
                agent_id=workspace.agent_id,
                branch_name=workspace.branch_name,
                worktree_path=workspace.worktree_path,
                base_commit_sha=base_commit_sha,
                status="active",
            ))

    def workspace_destroyed(self, agent_id: str) -> int:
        """Mark every active record for agent_id destroyed. Returns how many changed."""
        with self._lock, get_db(self.db_manager) as session:
            records = session.query(WorkspaceRecord).filter_by(agent_id=agent_id, status="active").all()
            for record in records:
                record.status = "destroyed"
                record.destroyed_at = datetime.utcnow()
            return len(records)

    def begin(self, agent_id: str, operation: ReconciliationKind, trunk_tip: Optional[str] = None) -> str:
        """Write a 'started' row and return its id."""
        entry_id = str(uuid.uuid4())
        with self._lock, get_db(self.db_manager) as session:
            session.add(ReconciliationRecord(
                id=entry_id,
                agent_id=agent_id,
                operation=operation.value,
                status=ReconciliationStatus.STARTED.value,
                trunk_tip_before=trunk_tip,
            ))
        return entry_id

    def finish(self, entry_id: str, status: ReconciliationStatus, outcome: Optional[ReconciliationOutcome] = None,
               error: Optional[str] = None) -> None:
        with self._lock, get_db(self.db_manager) as session:
            record = session.get(ReconciliationRecord, entry_id)
            if record is None:
                logger.warning(f"[JOURNAL] No journal entry {entry_id} to finish")
                return
            record.status = status.value
            record.finished_at = datetime.utcnow()
            if outcome is not None:
                record.message = outcome.message
                record.commits_merged = outcome.commits_merged
                record.conflicting_paths = list(outcome.conflicting_paths)
                record.merge_commit_sha = outcome.merge_commit_sha
            if error is not None:
                record.message = error

    def unfinished(self) -> List[Dict[str, Any]]:
        """Merges still marked 'started'. Syncs never touch the trunk and are excluded."""
        with self._lock, get_db(self.db_manager) as session:
            records = (
                session.query(ReconciliationRecord)
                .filter_by(
                    operation=ReconciliationKind.MERGE.value,
                    status=ReconciliationStatus.STARTED.value,
                )
                .order_by(ReconciliationRecord.started_at)
                .all()
            )
            return [_record_to_dict(r) for r in records]

    def mark_interrupted(self) -> int:
        """Close out every 'started' merge as 'interrupted'. Returns the count."""
        with self._lock, get_db(self.db_manager) as session:
            records = session.query(ReconciliationRecord).filter_by(
                operation=ReconciliationKind.MERGE.value,
                status=ReconciliationStatus.STARTED.value,
            ).all()
            for record in records:
                record.status = ReconciliationStatus.INTERRUPTED.value
                record.finished_at = datetime.utcnow()
                record.message = "Outcome not observed; trunk checked during recovery"
            if records:
                logger.warning(f"[JOURNAL] Marked {len(records)} unfinished merge(s) interrupted")
            return len(records)

    def history(self, agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Reconciliation entries, oldest first, optionally for one agent."""
        with self._lock, get_db(self.db_manager) as session:
            query = session.query(ReconciliationRecord)
            if agent_id is not None:
                query = query.filter_by(agent_id=agent_id)
            return [_record_to_dict(r) for r in query.order_by(ReconciliationRecord.started_at).all()]

    def workspaces(self, agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock, get_db(self.db_manager) as session:
            query = session.query(WorkspaceRecord)
            if agent_id is not None:
                query = query.filter_by(agent_id=agent_id)
            return [
                {
                    "agent_id": r.agent_id,
                    "branch_name": r.branch_name,
                    "worktree_path": r.worktree_path,
                    "base_commit_sha": r.base_commit_sha,
                    "status": r.status,
                    "created_at": r.created_at.isoformat() if r.created_at else None,
                    "destroyed_at": r.destroyed_at.isoformat() if r.destroyed_at else None,
                }
                for r in query.order_by(WorkspaceRecord.created_at).all()
            ]
