"""Value types returned by the Anvil core."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ReconciliationKind(Enum):
    """Which reconciliation produced an outcome."""
    MERGE = "merge"
    SYNC = "sync"


class ReconciliationStatus(Enum):
    """Journal status of a reconciliation attempt."""
    STARTED = "started"
    MERGED = "merged"
    NOOP = "noop"
    SYNCED = "synced"
    CONFLICT = "conflict"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass
class Workspace:
    """An agent's isolated working copy and the branch backing it."""
    agent_id: str
    branch_name: str
    worktree_path: str
    ahead: int = 0
    behind: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReconciliationOutcome:
    """Result of a merge or sync.

    conflicting_paths is only non-empty when success is False because of a
    content conflict.
    """
    success: bool
    message: str
    conflicting_paths: List[str] = field(default_factory=list)
    operation: ReconciliationKind = ReconciliationKind.MERGE
    commits_merged: int = 0
    merge_commit_sha: Optional[str] = None

    @property
    def is_conflict(self) -> bool:
        return not self.success and bool(self.conflicting_paths)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["operation"] = self.operation.value
        return data


@dataclass
class TrunkHealth:
    """Snapshot of the trunk's working directory, for post-crash checks."""
    clean: bool
    branch: Optional[str]
    merge_in_progress: bool
    status: str
    tip: Optional[str] = None
    interrupted_operations: int = 0

    @property
    def healthy(self) -> bool:
        return self.clean and not self.merge_in_progress and self.interrupted_operations == 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["healthy"] = self.healthy
        return data
