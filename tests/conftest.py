"""Shared pytest fixtures for Anvil tests.

Tests run real git against repositories under pytest's tmp_path.
"""

from pathlib import Path

import pytest


@pytest.fixture
def db_manager():
    """Create a fresh in-memory database manager for each test."""
    from anvil.core.database import DatabaseManager

    manager = DatabaseManager(":memory:")
    manager.create_tables()
    yield manager


@pytest.fixture
def runner():
    from anvil.core.git_runner import GitPythonRunner

    return GitPythonRunner(timeout=30.0)


@pytest.fixture
def anvil_root(tmp_path):
    return tmp_path / "anvil"


@pytest.fixture
def uninitialized_manager(anvil_root, runner, db_manager):
    """Manager whose trunk has not been created yet."""
    from anvil.core.worktree_manager import WorktreeManager

    return WorktreeManager(
        repo_path=anvil_root / "repo",
        worktrees_dir=anvil_root / "worktrees",
        runner=runner,
        db_manager=db_manager,
    )


@pytest.fixture
def manager(uninitialized_manager):
    """Manager with an initialized trunk and journaling enabled."""
    uninitialized_manager.init_repo()
    yield uninitialized_manager


@pytest.fixture
def merge_queue(manager, db_manager):
    from anvil.queue.merge_queue import MergeQueue

    return MergeQueue(manager, db_manager)


@pytest.fixture
def write_file():
    """Write text into a workspace (or any directory), creating parents."""

    def _write(directory, name: str, content: str) -> Path:
        path = Path(directory) / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path

    return _write


@pytest.fixture
def trunk_file(manager):
    """Read a file as committed on the trunk's base branch, or None."""
    from anvil.core.exceptions import GitCommandFailure

    def _read(name: str):
        try:
            return manager.runner.run(["show", f"{manager.base_branch}:{name}"], manager.repo_path)
        except GitCommandFailure:
            return None

    return _read
