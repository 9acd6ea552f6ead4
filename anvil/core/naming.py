"""Deterministic branch and path derivation for agent workspaces."""

import re
from pathlib import Path

from anvil.core.exceptions import InvalidAgentIdError

DEFAULT_BRANCH_PREFIX = "worker/"

_AGENT_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


def validate_agent_id(agent_id: str) -> str:
    """Check that agent_id is usable as both a directory name and a ref component.

    Raises:
        InvalidAgentIdError: if the id is empty or contains characters git or
            the filesystem would treat specially.
    """
    if not isinstance(agent_id, str) or not _AGENT_ID_PATTERN.fullmatch(agent_id):
        raise InvalidAgentIdError(
            f"Invalid agent id {agent_id!r}: use letters, digits, '.', '_' or '-'"
        )
    if ".." in agent_id or agent_id.endswith(".lock") or agent_id.endswith("."):
        raise InvalidAgentIdError(f"Invalid agent id {agent_id!r}")
    return agent_id


def branch_name_for(agent_id: str, prefix: str = DEFAULT_BRANCH_PREFIX) -> str:
    """worker/<agent_id>"""
    return f"{prefix}{agent_id}"


def agent_id_for(branch_name: str, prefix: str = DEFAULT_BRANCH_PREFIX) -> str:
    """Inverse of branch_name_for. Accepts a bare branch or a refs/heads/ ref."""
    if branch_name.startswith("refs/heads/"):
        branch_name = branch_name[len("refs/heads/"):]
    if branch_name.startswith(prefix):
        return branch_name[len(prefix):]
    return branch_name


def worktree_path_for(worktrees_root: Path, agent_id: str) -> Path:
    """<worktrees_root>/<agent_id>, absolute."""
    return Path(worktrees_root).resolve() / agent_id
