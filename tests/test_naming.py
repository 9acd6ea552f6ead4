"""Tests for branch and path derivation."""

from pathlib import Path

import pytest

from anvil.core.exceptions import InvalidAgentIdError
from anvil.core.naming import agent_id_for, branch_name_for, validate_agent_id, worktree_path_for


class TestNaming:

    def test_branch_name(self):
        assert branch_name_for("agent-7") == "worker/agent-7"
        assert branch_name_for("agent-7", prefix="bots/") == "bots/agent-7"

    def test_agent_id_round_trips_through_refs(self):
        assert agent_id_for("worker/agent-7") == "agent-7"
        assert agent_id_for("refs/heads/worker/agent-7") == "agent-7"
        assert agent_id_for("feature/x") == "feature/x"

    def test_worktree_path_is_absolute_child_of_root(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = worktree_path_for(Path("worktrees"), "agent-7")
        assert path.is_absolute()
        assert path == (tmp_path / "worktrees" / "agent-7").resolve()

    def test_distinct_ids_give_distinct_names(self, tmp_path):
        assert branch_name_for("a") != branch_name_for("b")
        assert worktree_path_for(tmp_path, "a") != worktree_path_for(tmp_path, "b")

    @pytest.mark.parametrize("agent_id", ["agent-1", "A", "claude_3.5", "x9"])
    def test_valid_ids(self, agent_id):
        assert validate_agent_id(agent_id) == agent_id

    @pytest.mark.parametrize(
        "agent_id",
        ["", ".hidden", "a..b", "a/b", "a\\b", "name.lock", "trailing.", "white space", "tab\t", "-x", None],
    )
    def test_invalid_ids(self, agent_id):
        with pytest.raises(InvalidAgentIdError):
            validate_agent_id(agent_id)
