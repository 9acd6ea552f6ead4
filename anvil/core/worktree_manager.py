"""Worktree manager for isolated agent workspaces.

Every agent works in its own git worktree on branch ``worker/<agent_id>``.
The manager creates and destroys those worktrees, merges them into the trunk
under a lock, rebases them onto the trunk on request, and reports on them.
"""

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from anvil.core.database import DatabaseManager
from anvil.core.exceptions import GitCommandFailure, GitTimeoutError, WorkspaceExistsError
from anvil.core.git_runner import GitPythonRunner, GitRunner
from anvil.core.inspection import WorkspaceInspector
from anvil.core.journal import ReconciliationJournal
from anvil.core.models import ReconciliationOutcome, TrunkHealth, Workspace
from anvil.core.naming import DEFAULT_BRANCH_PREFIX, validate_agent_id
from anvil.core.reconciliation import ReconciliationEngine
from anvil.core.simple_config import AnvilConfig
from anvil.core.trunk import TrunkRepository

logger = logging.getLogger(__name__)


class WorktreeManager:
    """Manages git worktrees for agent isolation."""

    def __init__(
        self,
        repo_path: Union[str, Path],
        worktrees_dir: Union[str, Path],
        runner: Optional[GitRunner] = None,
        db_manager: Optional[DatabaseManager] = None,
        base_branch: str = "main",
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        lock_timeout: float = 300.0,
    ):
        """Initialize worktree manager.

        Args:
            repo_path: Trunk repository directory
            worktrees_dir: Directory that holds one subdirectory per agent
            runner: Git command runner (GitPythonRunner by default)
            db_manager: Journal database; journaling is off when None
            base_branch: Integration branch
            branch_prefix: Prefix for per-agent branches
            lock_timeout: Seconds a merge waits for the trunk lock
        """
        self.runner = runner or GitPythonRunner()
        self.trunk = TrunkRepository(repo_path, self.runner, base_branch)
        self.worktrees_root = Path(worktrees_dir).resolve()
        self.db_manager = db_manager
        self.journal = ReconciliationJournal(db_manager) if db_manager is not None else None

        self.inspector = WorkspaceInspector(self.trunk, self.worktrees_root, self.runner, branch_prefix)
        self.engine = ReconciliationEngine(
            self.trunk,
            self.inspector,
            self.runner,
            journal=self.journal,
            lock_timeout=lock_timeout,
        )

        logger.info(f"WorktreeManager initialized: trunk={self.trunk.root_path}, worktrees={self.worktrees_root}")

    @classmethod
    def from_config(cls, config: AnvilConfig) -> "WorktreeManager":
        """Build a manager (and its journal) from an AnvilConfig."""
        db_manager = DatabaseManager(config.database_path)
        db_manager.create_tables()
        runner = GitPythonRunner(identity=config.git_identity, timeout=config.git_timeout_seconds)
        return cls(
            repo_path=config.repo_path,
            worktrees_dir=config.worktrees_path,
            runner=runner,
            db_manager=db_manager,
            base_branch=config.base_branch,
            branch_prefix=config.worktree_branch_prefix,
            lock_timeout=config.merge_lock_timeout_seconds,
        )

    @property
    def repo_path(self) -> Path:
        return self.trunk.root_path

    @property
    def base_branch(self) -> str:
        return self.trunk.base_branch

    # ---- trunk ---------------------------------------------------------

    def init_repo(self) -> None:
        """Create the trunk repository if it does not exist yet."""
        self.trunk.init_repo()

    def has_repo(self) -> bool:
        return self.trunk.has_repo()

    # ---- lifecycle -----------------------------------------------------

    def create_worktree(self, agent_id: str) -> Workspace:
        """Create an isolated worktree for an agent, branched from the trunk tip.

        Args:
            agent_id: Unique agent identifier

        Returns:
            The new workspace, with ahead and behind both 0

        Raises:
            InvalidAgentIdError: agent_id is not a safe path/ref component
            TrunkMissingError: init_repo() has not been called
            WorkspaceExistsError: the directory or branch already exists
        """
        validate_agent_id(agent_id)
        self.trunk.require()

        branch_name = self.inspector.branch_name(agent_id)
        worktree_path = self.inspector.worktree_path(agent_id)
        logger.info(f"[WORKTREE] Creating {branch_name} at {worktree_path}")

        if worktree_path.exists():
            raise WorkspaceExistsError(f"Worktree directory already exists: {worktree_path}")
        if self.inspector.branch_exists(branch_name):
            raise WorkspaceExistsError(f"Branch already exists: {branch_name}")

        self.worktrees_root.mkdir(parents=True, exist_ok=True)
        # Forget registrations whose directories were deleted by hand
        self.runner.run(["worktree", "prune"], self.trunk.root_path)

        base_commit_sha = self.trunk.tip()
        # Branch and directory are created together; the directory must not pre-exist
        self.runner.run(
            ["worktree", "add", "-b", branch_name, str(worktree_path), self.trunk.base_branch],
            self.trunk.root_path,
        )

        workspace = Workspace(
            agent_id=agent_id,
            branch_name=branch_name,
            worktree_path=str(worktree_path),
        )
        if self.journal is not None:
            self.journal.workspace_created(workspace, base_commit_sha)

        logger.info(f"[WORKTREE] Created worktree for {agent_id} from {base_commit_sha[:8]}")
        return workspace

    def destroy_worktree(self, agent_id: str) -> None:
        """Remove an agent's worktree and branch, discarding uncommitted edits.

        Idempotent: missing directory, branch or trunk are all fine.
        """
        validate_agent_id(agent_id)
        if not self.trunk.has_repo():
            logger.info(f"[WORKTREE] No trunk; nothing to destroy for {agent_id}")
            return

        branch_name = self.inspector.branch_name(agent_id)
        worktree_path = self.inspector.worktree_path(agent_id)

        if worktree_path.exists():
            try:
                self.runner.run(["worktree", "remove", "--force", str(worktree_path)], self.trunk.root_path)
            except GitTimeoutError:
                raise
            except GitCommandFailure as e:
                logger.warning(f"[WORKTREE] git worktree remove failed for {agent_id}, deleting directory: {e}")
                shutil.rmtree(worktree_path)

        self.runner.run(["worktree", "prune"], self.trunk.root_path)

        if self.inspector.branch_exists(branch_name):
            self.runner.run(["branch", "-D", branch_name], self.trunk.root_path)

        if self.journal is not None:
            self.journal.workspace_destroyed(agent_id)

        logger.info(f"[WORKTREE] Destroyed worktree for {agent_id}")

    def get_worktree(self, agent_id: str) -> Optional[Workspace]:
        validate_agent_id(agent_id)
        return self.inspector.get_worktree(agent_id)

    def list_worktrees(self) -> List[Workspace]:
        return self.inspector.list_worktrees()

    # ---- reconciliation ------------------------------------------------

    def merge_branch(self, agent_id: str) -> ReconciliationOutcome:
        """Merge the agent's branch into the trunk. See ReconciliationEngine.merge_branch."""
        validate_agent_id(agent_id)
        return self.engine.merge_branch(agent_id)

    def update_worktree(self, agent_id: str) -> ReconciliationOutcome:
        """Rebase the agent's branch onto the trunk. See ReconciliationEngine.update_worktree."""
        validate_agent_id(agent_id)
        return self.engine.update_worktree(agent_id)

    def commit(self, workspace_path: Union[str, Path], message: str) -> bool:
        return self.engine.commit(Path(workspace_path), message)

    # ---- reporting -----------------------------------------------------

    def get_branch_diff(self, agent_id: str) -> str:
        validate_agent_id(agent_id)
        return self.inspector.get_branch_diff(agent_id)

    def get_branch_status(self, agent_id: str) -> str:
        validate_agent_id(agent_id)
        return self.inspector.get_branch_status(agent_id)

    def get_trunk_status(self) -> str:
        return self.inspector.get_trunk_status()

    def check_trunk(self) -> TrunkHealth:
        """Report whether the trunk is safe to merge into.

        Run after a crash before any further merges. Unfinished journal
        entries count against health even when the trunk looks clean, since
        their merges may or may not have landed.
        """
        self.trunk.require()
        status = self.get_trunk_status()
        try:
            tip = self.trunk.tip()
        except GitTimeoutError:
            raise
        except GitCommandFailure:
            tip = None

        interrupted = len(self.journal.unfinished()) if self.journal is not None else 0
        return TrunkHealth(
            clean=not status.strip(),
            branch=self.trunk.current_branch(),
            merge_in_progress=self.trunk.merge_in_progress(),
            status=status,
            tip=tip,
            interrupted_operations=interrupted,
        )

    def recover_trunk(self) -> TrunkHealth:
        """Abort a merge left behind by a crash and close out dangling journal entries.

        Uncommitted trunk edits are reported, never discarded.
        """
        self.trunk.require()
        with self.trunk.merge_lock("recover", timeout=self.engine.lock_timeout):
            if self.trunk.merge_in_progress():
                logger.warning(f"[TRUNK] Aborting unfinished merge in {self.trunk.root_path}")
                self.trunk.abort_merge()
            if self.journal is not None:
                self.journal.mark_interrupted()

        health = self.check_trunk()
        if not health.healthy:
            logger.warning(f"[TRUNK] Trunk still needs attention after recovery: {health.to_dict()}")
        return health

    def history(self, agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Journaled merges and syncs, oldest first. Empty when journaling is off."""
        if self.journal is None:
            return []
        return self.journal.history(agent_id)
