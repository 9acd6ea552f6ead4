"""Moving work between agent workspaces and the trunk.

merge_branch finalizes a workspace into the base branch under the trunk lock.
update_worktree rebases a workspace onto the base branch without the lock,
since it only reads the base branch and rewrites the agent's own branch.
Content conflicts come back as failed outcomes; everything else raises.
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from anvil.core.exceptions import (
    GitCommandFailure,
    GitTimeoutError,
    TrunkStateError,
    WorkspaceNotFoundError,
)
from anvil.core.git_runner import GitRunner
from anvil.core.inspection import WorkspaceInspector
from anvil.core.journal import ReconciliationJournal
from anvil.core.models import ReconciliationKind, ReconciliationOutcome, ReconciliationStatus
from anvil.core.trunk import TrunkRepository

logger = logging.getLogger(__name__)

_CONFLICT_MARKERS = ("CONFLICT", "Automatic merge failed")


def _is_content_conflict(error: GitCommandFailure) -> bool:
    return any(marker in error.output for marker in _CONFLICT_MARKERS)


class ReconciliationEngine:
    """Merge and sync state machines over one trunk."""

    def __init__(
        self,
        trunk: TrunkRepository,
        inspector: WorkspaceInspector,
        runner: GitRunner,
        journal: Optional[ReconciliationJournal] = None,
        lock_timeout: float = 300.0,
    ):
        self.trunk = trunk
        self.inspector = inspector
        self.runner = runner
        self.journal = journal
        self.lock_timeout = lock_timeout

    # ---- commits -------------------------------------------------------

    def auto_commit(self, worktree_path: Path, message: str) -> bool:
        """Stage and commit everything in worktree_path. Returns False when clean."""
        self.runner.run(["add", "-A"], worktree_path)
        status = self.runner.run(["status", "--porcelain"], worktree_path)
        if not status.strip():
            return False
        self.runner.run(["commit", "--no-verify", "-m", message], worktree_path)
        logger.info(f"[COMMIT] {worktree_path}: {message}")
        return True

    def commit(self, worktree_path: Path, message: str) -> bool:
        """Commit all changes with a caller-chosen message.

        Returns False when there is nothing to commit or git rejects the
        commit. Timeouts still raise.
        """
        try:
            return self.auto_commit(Path(worktree_path), message)
        except GitTimeoutError:
            raise
        except GitCommandFailure as e:
            logger.warning(f"[COMMIT] Commit in {worktree_path} failed: {e}")
            return False

    # ---- merge ---------------------------------------------------------

    def merge_branch(self, agent_id: str) -> ReconciliationOutcome:
        """Auto-commit the workspace and merge its branch into the base branch.

        Raises:
            WorkspaceNotFoundError: no live workspace for agent_id
            TrunkStateError: the trunk is dirty, mid-merge or off the base branch
            MergeLockTimeout: another merge held the trunk for too long
            GitCommandFailure: a non-conflict git failure (including timeouts)
        """
        self.trunk.require()
        if not self.inspector.is_alive(agent_id):
            raise WorkspaceNotFoundError(f"No workspace for agent {agent_id}")

        branch_name = self.inspector.branch_name(agent_id)
        worktree_path = self.inspector.worktree_path(agent_id)

        with self.trunk.merge_lock(agent_id, timeout=self.lock_timeout):
            self._require_clean_trunk(agent_id)

            entry_id = None
            if self.journal is not None:
                entry_id = self.journal.begin(agent_id, ReconciliationKind.MERGE, self.trunk.tip())

            try:
                outcome, status = self._merge_locked(agent_id, branch_name, worktree_path)
            except Exception as e:
                if entry_id is not None:
                    self.journal.finish(entry_id, ReconciliationStatus.FAILED, error=str(e))
                raise

            if entry_id is not None:
                self.journal.finish(entry_id, status, outcome)
            return outcome

    def _require_clean_trunk(self, agent_id: str) -> None:
        if self.trunk.merge_in_progress():
            raise TrunkStateError(
                f"[GIT-MERGE:{agent_id}] Trunk has an unfinished merge; run recover_trunk() first"
            )
        branch = self.trunk.current_branch()
        if branch != self.trunk.base_branch:
            raise TrunkStateError(
                f"[GIT-MERGE:{agent_id}] Trunk is on {branch!r}, expected {self.trunk.base_branch!r}"
            )
        if not self.trunk.is_clean():
            raise TrunkStateError(f"[GIT-MERGE:{agent_id}] Trunk working directory has uncommitted changes")

    def _merge_locked(
        self, agent_id: str, branch_name: str, worktree_path: Path
    ) -> Tuple[ReconciliationOutcome, ReconciliationStatus]:
        base = self.trunk.base_branch

        if self.auto_commit(worktree_path, f"Auto-commit: worker {agent_id}"):
            logger.info(f"[GIT-MERGE:{agent_id}] Committed pending edits before merge")

        ahead, behind = self.inspector.ahead_behind(branch_name, strict=True)
        logger.info(f"[GIT-MERGE:{agent_id}] {branch_name} is {ahead} ahead, {behind} behind {base}")
        if ahead == 0:
            return ReconciliationOutcome(
                success=True,
                message=f"Nothing to merge: branch is up to date with {base}.",
            ), ReconciliationStatus.NOOP

        try:
            self.runner.run(
                ["merge", "--no-ff", "--no-verify", "-m", f"Merge {branch_name}", branch_name],
                self.trunk.root_path,
            )
        except GitTimeoutError:
            logger.error(f"[GIT-MERGE:{agent_id}] Merge timed out; trunk needs inspection")
            raise
        except GitCommandFailure as e:
            self.trunk.abort_merge()
            if not _is_content_conflict(e):
                logger.error(f"[GIT-MERGE:{agent_id}] Merge failed without a content conflict: {e}")
                raise

            conflicts = self._conflicting_paths(agent_id, branch_name)
            logger.warning(f"[GIT-MERGE:{agent_id}] Conflict merging {branch_name}: {conflicts}")
            return ReconciliationOutcome(
                success=False,
                message=(
                    f"Merge conflict merging {branch_name} into {base}. "
                    f"Conflicting files: {', '.join(conflicts)}"
                ),
                conflicting_paths=conflicts,
            ), ReconciliationStatus.CONFLICT

        merge_commit_sha = self.trunk.tip()
        logger.info(f"[GIT-MERGE:{agent_id}] Merged {ahead} commit(s) as {merge_commit_sha}")
        return ReconciliationOutcome(
            success=True,
            message=f"Merged {branch_name} into {base} ({ahead} commit(s)).",
            commits_merged=ahead,
            merge_commit_sha=merge_commit_sha,
        ), ReconciliationStatus.MERGED

    def _conflicting_paths(self, agent_id: str, branch_name: str) -> List[str]:
        """Replay the merge without committing, read unmerged paths, abort."""
        try:
            self.runner.run(["merge", "--no-commit", "--no-ff", branch_name], self.trunk.root_path)
        except GitTimeoutError:
            self.trunk.abort_merge()
            raise
        except GitCommandFailure:
            try:
                raw = self.runner.run(["diff", "--name-only", "--diff-filter=U"], self.trunk.root_path)
                return [line.strip() for line in raw.splitlines() if line.strip()]
            finally:
                self.trunk.abort_merge()

        # The trial merge applied cleanly this time
        self.trunk.abort_merge()
        logger.warning(f"[GIT-MERGE:{agent_id}] Trial merge found no conflicting paths")
        return []

    # ---- sync ----------------------------------------------------------

    def update_worktree(self, agent_id: str) -> ReconciliationOutcome:
        """Rebase the agent's branch onto the current base branch tip.

        Runs inside the workspace and takes no trunk lock.

        Raises:
            WorkspaceNotFoundError: no live workspace for agent_id
            GitCommandFailure: a non-conflict git failure (including timeouts)
        """
        self.trunk.require()
        if not self.inspector.is_alive(agent_id):
            raise WorkspaceNotFoundError(f"No workspace for agent {agent_id}")

        branch_name = self.inspector.branch_name(agent_id)
        worktree_path = self.inspector.worktree_path(agent_id)

        entry_id = None
        if self.journal is not None:
            entry_id = self.journal.begin(agent_id, ReconciliationKind.SYNC, self.trunk.tip())

        try:
            outcome, status = self._rebase(agent_id, branch_name, worktree_path)
        except Exception as e:
            if entry_id is not None:
                self.journal.finish(entry_id, ReconciliationStatus.FAILED, error=str(e))
            raise

        if entry_id is not None:
            self.journal.finish(entry_id, status, outcome)
        return outcome

    def _rebase(
        self, agent_id: str, branch_name: str, worktree_path: Path
    ) -> Tuple[ReconciliationOutcome, ReconciliationStatus]:
        base = self.trunk.base_branch

        if self.auto_commit(worktree_path, f"Auto-commit before sync: worker {agent_id}"):
            logger.info(f"[GIT-SYNC:{agent_id}] Committed pending edits before rebase")

        try:
            self.runner.run(["rebase", base], worktree_path)
        except GitTimeoutError:
            logger.error(f"[GIT-SYNC:{agent_id}] Rebase timed out; workspace needs inspection")
            raise
        except GitCommandFailure as e:
            conflicts = self._unmerged_paths(worktree_path)
            try:
                self.runner.run(["rebase", "--abort"], worktree_path)
            except GitCommandFailure:
                # No rebase was started, so this was not a conflict
                logger.error(f"[GIT-SYNC:{agent_id}] Rebase failed: {e}")
                raise e

            logger.warning(f"[GIT-SYNC:{agent_id}] Rebase conflict, aborted: {conflicts}")
            return ReconciliationOutcome(
                success=False,
                message=f"Rebase conflict for {branch_name}. Branch left unchanged.",
                conflicting_paths=conflicts,
                operation=ReconciliationKind.SYNC,
            ), ReconciliationStatus.CONFLICT

        logger.info(f"[GIT-SYNC:{agent_id}] Rebased {branch_name} onto {base}")
        return ReconciliationOutcome(
            success=True,
            message=f"Rebased {branch_name} onto {base}.",
            operation=ReconciliationKind.SYNC,
        ), ReconciliationStatus.SYNCED

    def _unmerged_paths(self, worktree_path: Path) -> List[str]:
        try:
            raw = self.runner.run(["diff", "--name-only", "--diff-filter=U"], worktree_path)
        except GitCommandFailure:
            return []
        return [line.strip() for line in raw.splitlines() if line.strip()]
