"""Anvil: isolated git worktrees for concurrent agents, reconciled into one trunk."""

__version__ = "0.1.0"
