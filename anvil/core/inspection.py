"""Read-only reporting over the trunk and agent workspaces."""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from anvil.core.exceptions import GitCommandFailure, GitTimeoutError
from anvil.core.git_runner import GitRunner
from anvil.core.models import Workspace
from anvil.core.naming import DEFAULT_BRANCH_PREFIX, agent_id_for, branch_name_for, worktree_path_for
from anvil.core.trunk import TrunkRepository

logger = logging.getLogger(__name__)

NO_DIFF_SENTINEL = "(no diff available)"
NO_STATUS_SENTINEL = "(status unavailable)"


class WorkspaceInspector:
    """Computes divergence, diffs and status on demand; caches nothing."""

    def __init__(
        self,
        trunk: TrunkRepository,
        worktrees_root: Path,
        runner: GitRunner,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
    ):
        self.trunk = trunk
        self.worktrees_root = Path(worktrees_root).resolve()
        self.runner = runner
        self.branch_prefix = branch_prefix

    def branch_name(self, agent_id: str) -> str:
        return branch_name_for(agent_id, self.branch_prefix)

    def worktree_path(self, agent_id: str) -> Path:
        return worktree_path_for(self.worktrees_root, agent_id)

    def branch_exists(self, branch_name: str) -> bool:
        if not self.trunk.has_repo():
            return False
        try:
            self.runner.run(["show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}"], self.trunk.root_path)
            return True
        except GitTimeoutError:
            raise
        except GitCommandFailure:
            return False

    def ahead_behind(self, branch_name: str, strict: bool = False) -> Tuple[int, int]:
        """Commits (ahead, behind) of branch_name relative to the base branch.

        Returns (0, 0) when either ref cannot be resolved, unless strict is set.

        Raises:
            GitCommandFailure: strict and rev-list failed or printed something unexpected
        """
        try:
            raw = self.runner.run(
                ["rev-list", "--left-right", "--count", f"{self.trunk.base_branch}...{branch_name}"],
                self.trunk.root_path,
            )
        except GitTimeoutError:
            raise
        except GitCommandFailure as e:
            if strict:
                raise
            logger.debug(f"[INSPECT] Could not count divergence for {branch_name}: {e}")
            return 0, 0

        parts = raw.split()
        if len(parts) != 2:
            if strict:
                raise GitCommandFailure(["rev-list"], None, raw, "unexpected rev-list output")
            return 0, 0
        behind, ahead = (int(p) for p in parts)
        return ahead, behind

    def is_alive(self, agent_id: str) -> bool:
        """Directory and branch both present."""
        return self.worktree_path(agent_id).exists() and self.branch_exists(self.branch_name(agent_id))

    def get_worktree(self, agent_id: str) -> Optional[Workspace]:
        if not self.is_alive(agent_id):
            return None
        branch_name = self.branch_name(agent_id)
        ahead, behind = self.ahead_behind(branch_name)
        return Workspace(
            agent_id=agent_id,
            branch_name=branch_name,
            worktree_path=str(self.worktree_path(agent_id)),
            ahead=ahead,
            behind=behind,
        )

    def list_worktrees(self) -> List[Workspace]:
        """All registered worker worktrees, excluding the trunk itself."""
        if not self.trunk.has_repo():
            return []

        raw = self.runner.run(["worktree", "list", "--porcelain"], self.trunk.root_path)
        workspaces = []
        for block in raw.split("\n\n"):
            lines = [line for line in block.splitlines() if line]
            if not lines:
                continue

            worktree_path = None
            branch_ref = None
            for line in lines:
                if line.startswith("worktree "):
                    worktree_path = line[len("worktree "):].strip()
                elif line.startswith("branch "):
                    branch_ref = line[len("branch "):].strip()

            if not worktree_path or not branch_ref:
                continue
            branch_name = branch_ref.replace("refs/heads/", "", 1)
            if not branch_name.startswith(self.branch_prefix):
                continue
            if not Path(worktree_path).exists():
                # Registered but deleted out from under git; prunable
                continue

            ahead, behind = self.ahead_behind(branch_name)
            workspaces.append(Workspace(
                agent_id=agent_id_for(branch_name, self.branch_prefix),
                branch_name=branch_name,
                worktree_path=worktree_path,
                ahead=ahead,
                behind=behind,
            ))

        return workspaces

    def get_branch_diff(self, agent_id: str) -> str:
        """``git diff --stat`` of the agent's branch against the base branch."""
        branch_name = self.branch_name(agent_id)
        try:
            return self.runner.run(
                ["diff", "--stat", f"{self.trunk.base_branch}...{branch_name}"],
                self.trunk.root_path,
            )
        except GitTimeoutError:
            raise
        except GitCommandFailure as e:
            logger.debug(f"[INSPECT] No diff for {branch_name}: {e}")
            return NO_DIFF_SENTINEL

    def get_branch_status(self, agent_id: str) -> str:
        """Uncommitted changes inside the agent's workspace."""
        try:
            return self.runner.run(["status", "--short"], self.worktree_path(agent_id))
        except GitTimeoutError:
            raise
        except GitCommandFailure as e:
            logger.debug(f"[INSPECT] No status for {agent_id}: {e}")
            return NO_STATUS_SENTINEL

    def get_trunk_status(self) -> str:
        """Uncommitted changes in the trunk; empty when clean."""
        try:
            return self.trunk.status()
        except GitTimeoutError:
            raise
        except GitCommandFailure as e:
            logger.debug(f"[INSPECT] No trunk status: {e}")
            return NO_STATUS_SENTINEL
