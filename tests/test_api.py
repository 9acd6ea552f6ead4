"""Tests for the HTTP adapter."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from anvil.api.server import create_app
from anvil.core.exceptions import GitTimeoutError, MergeLockTimeout


@pytest.fixture
def client(manager, merge_queue):
    return TestClient(create_app(manager, merge_queue))


@pytest.fixture
def bare_client(uninitialized_manager):
    return TestClient(create_app(uninitialized_manager))


class TestRepoEndpoints:

    def test_init_and_describe(self, bare_client):
        assert bare_client.get("/repo").json()["has_repo"] is False

        response = bare_client.post("/repo/init")

        assert response.status_code == 200
        assert bare_client.get("/repo").json()["has_repo"] is True
        assert bare_client.get("/health").json()["status"] == "healthy"

    def test_status_without_trunk_is_conflict(self, bare_client):
        assert bare_client.get("/repo/status").status_code == 409

    def test_status_and_recover(self, client):
        health = client.get("/repo/status").json()
        assert health["healthy"] is True
        assert health["branch"] == "main"

        assert client.post("/repo/recover").json()["healthy"] is True

    def test_queue_routes_absent_without_queue(self, bare_client):
        assert bare_client.get("/queue").status_code == 404


class TestWorktreeEndpoints:

    def test_lifecycle(self, client):
        response = client.post("/worktrees", json={"agent_id": "A"})
        assert response.status_code == 201
        workspace = response.json()
        assert workspace["branch_name"] == "worker/A"

        with open(f"{workspace['worktree_path']}/a.txt", "w") as f:
            f.write("A")

        assert "a.txt" in client.get("/worktrees/A/status").json()["status"]
        client.post("/worktrees/A/commit", json={"message": "Add a.txt"})
        assert "a.txt" in client.get("/worktrees/A/diff").json()["diff"]

        merge = client.post("/worktrees/A/merge").json()
        assert merge["success"] is True
        assert merge["operation"] == "merge"
        assert merge["commits_merged"] == 1

        assert [w["agent_id"] for w in client.get("/worktrees").json()] == ["A"]
        assert client.get("/worktrees/A").json()["ahead"] == 0

        sync = client.post("/worktrees/A/sync").json()
        assert sync["success"] is True
        assert sync["operation"] == "sync"

        assert client.delete("/worktrees/A").json()["destroyed"] is True
        assert client.delete("/worktrees/A").status_code == 200
        assert client.get("/worktrees").json() == []
        assert [h["status"] for h in client.get("/repo/history", params={"agent_id": "A"}).json()] == [
            "merged", "synced"
        ]

    def test_commit(self, client):
        workspace = client.post("/worktrees", json={"agent_id": "A"}).json()

        assert client.post("/worktrees/A/commit", json={"message": "nothing"}).json()["committed"] is False

        with open(f"{workspace['worktree_path']}/x.txt", "w") as f:
            f.write("x")
        assert client.post("/worktrees/A/commit", json={"message": "Add x"}).json()["committed"] is True

    def test_error_codes(self, client):
        assert client.get("/worktrees/ghost").status_code == 404
        assert client.post("/worktrees/ghost/merge").status_code == 404
        assert client.post("/worktrees/ghost/commit", json={"message": "m"}).status_code == 404
        assert client.post("/worktrees", json={"agent_id": "bad id"}).status_code == 400
        assert client.post("/worktrees", json={}).status_code == 422

        client.post("/worktrees", json={"agent_id": "A"})
        assert client.post("/worktrees", json={"agent_id": "A"}).status_code == 409

    def test_conflict_is_a_normal_response(self, client):
        for agent_id in ("A", "B"):
            workspace = client.post("/worktrees", json={"agent_id": agent_id}).json()
            with open(f"{workspace['worktree_path']}/same.txt", "w") as f:
                f.write(agent_id)
        client.post("/worktrees/A/merge")

        response = client.post("/worktrees/B/merge")

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["conflicting_paths"] == ["same.txt"]


class TestFailureMapping:

    def test_git_timeout_is_504(self):
        manager = MagicMock()
        manager.merge_branch.side_effect = GitTimeoutError(["merge"], None, "", "did not complete in 30 secs")

        response = TestClient(create_app(manager)).post("/worktrees/A/merge")

        assert response.status_code == 504

    def test_lock_timeout_is_503(self):
        manager = MagicMock()
        manager.merge_branch.side_effect = MergeLockTimeout("busy")

        response = TestClient(create_app(manager)).post("/worktrees/A/merge")

        assert response.status_code == 503
        assert response.json()["detail"] == "busy"


class TestQueueEndpoints:

    def test_enqueue_and_run(self, client):
        workspace = client.post("/worktrees", json={"agent_id": "A"}).json()
        with open(f"{workspace['worktree_path']}/a.txt", "w") as f:
            f.write("A")

        assert client.post("/queue", json={"agent_id": "A"}).status_code == 201
        assert [e["agent_id"] for e in client.get("/queue").json()] == ["A"]

        processed = client.post("/queue/run").json()["processed"]

        assert [e["status"] for e in processed] == ["merged"]
        assert client.post("/queue/process").json()["processed"] is None

    def test_queue_errors(self, client):
        assert client.post("/queue", json={"agent_id": "ghost"}).status_code == 404
        assert client.delete("/queue/ghost").status_code == 404
        assert client.post("/queue/ghost/reorder", json={"position": 1}).status_code == 404
        assert client.post("/queue/ghost/requeue").status_code == 404

    def test_reorder_and_remove(self, client):
        for agent_id in ("A", "B"):
            client.post("/worktrees", json={"agent_id": agent_id})
            client.post("/queue", json={"agent_id": agent_id})

        assert client.post("/queue/B/reorder", json={"position": 0}).json()["position"] == 0
        assert [e["agent_id"] for e in client.get("/queue").json()] == ["B", "A"]

        assert client.delete("/queue/A").json()["removed"] is True
        assert [e["agent_id"] for e in client.get("/queue").json()] == ["B"]
