"""Core components: git runner, trunk, workspaces, reconciliation and journal."""

from anvil.core.models import ReconciliationOutcome, TrunkHealth, Workspace
from anvil.core.worktree_manager import WorktreeManager

__all__ = ["ReconciliationOutcome", "TrunkHealth", "Workspace", "WorktreeManager"]
