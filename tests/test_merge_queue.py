"""Tests for the merge queue."""

import pytest

from anvil.core.database import MergeQueueEntry, get_db
from anvil.core.exceptions import QueueEntryNotFoundError, WorkspaceNotFoundError


def _set_status(db_manager, agent_id, status):
    with get_db(db_manager) as session:
        session.query(MergeQueueEntry).filter_by(agent_id=agent_id).one().status = status


class TestQueueManagement:

    def test_enqueue_requires_workspace(self, merge_queue):
        with pytest.raises(WorkspaceNotFoundError):
            merge_queue.enqueue("ghost")

    def test_enqueue_appends_in_order(self, manager, merge_queue):
        for agent_id in ("A", "B", "C"):
            manager.create_worktree(agent_id)
            merge_queue.enqueue(agent_id)

        queue = merge_queue.get_queue()
        assert [e["agent_id"] for e in queue] == ["A", "B", "C"]
        assert [e["position"] for e in queue] == [1, 2, 3]
        assert all(e["status"] == "queued" for e in queue)

    def test_enqueue_is_idempotent(self, manager, merge_queue):
        manager.create_worktree("A")
        first = merge_queue.enqueue("A")
        second = merge_queue.enqueue("A")

        assert first["id"] == second["id"]
        assert len(merge_queue.get_queue()) == 1

    def test_remove(self, manager, merge_queue):
        manager.create_worktree("A")
        merge_queue.enqueue("A")

        assert merge_queue.remove("A") is True
        assert merge_queue.remove("A") is False
        assert not merge_queue.is_queued("A")

    def test_reorder(self, manager, merge_queue):
        for agent_id in ("A", "B"):
            manager.create_worktree(agent_id)
            merge_queue.enqueue(agent_id)

        assert merge_queue.reorder("B", 0) is True
        assert merge_queue.reorder("ghost", 5) is False
        assert [e["agent_id"] for e in merge_queue.get_queue()] == ["B", "A"]

    def test_requeue_unknown_raises(self, merge_queue):
        with pytest.raises(QueueEntryNotFoundError):
            merge_queue.requeue("ghost")


class TestProcessing:

    def test_empty_queue_does_nothing(self, merge_queue):
        assert merge_queue.process_next() is None
        assert merge_queue.run_pending() == []

    def test_process_next_syncs_then_merges(self, manager, merge_queue, write_file, trunk_file):
        workspace = manager.create_worktree("A")
        write_file(workspace.worktree_path, "a.txt", "A")
        merge_queue.enqueue("A")

        entry = merge_queue.process_next()

        assert entry["agent_id"] == "A"
        assert entry["status"] == "merged"
        assert entry["attempts"] == 1
        assert entry["merged_at"] is not None
        assert trunk_file("a.txt").strip() == "A"
        assert [h["operation"] for h in manager.history("A")] == ["sync", "merge"]

    def test_run_pending_merges_in_queue_order(self, manager, merge_queue, write_file, trunk_file):
        for agent_id in ("A", "B"):
            workspace = manager.create_worktree(agent_id)
            write_file(workspace.worktree_path, f"{agent_id}.txt", agent_id)
        merge_queue.enqueue("B")
        merge_queue.enqueue("A")

        processed = merge_queue.run_pending()

        assert [e["agent_id"] for e in processed] == ["B", "A"]
        assert all(e["status"] == "merged" for e in processed)
        assert trunk_file("A.txt") is not None
        assert trunk_file("B.txt") is not None

    def test_conflict_is_recorded_and_requeue_resets(self, manager, merge_queue, write_file):
        a = manager.create_worktree("A")
        b = manager.create_worktree("B")
        write_file(a.worktree_path, "shared.txt", "A\n")
        write_file(b.worktree_path, "shared.txt", "B\n")
        merge_queue.enqueue("A")
        merge_queue.enqueue("B")

        processed = merge_queue.run_pending()

        statuses = {e["agent_id"]: e["status"] for e in processed}
        assert statuses == {"A": "merged", "B": "conflict"}
        b_entry = merge_queue.get_entry("B")
        assert b_entry["conflicting_paths"] == ["shared.txt"]
        assert "Rebase conflict" in b_entry["last_error"]

        requeued = merge_queue.requeue("B")
        assert requeued["status"] == "queued"
        assert requeued["last_error"] is None
        assert requeued["position"] == 3

    def test_nothing_runs_while_an_entry_is_in_flight(self, manager, merge_queue, db_manager):
        for agent_id in ("A", "B"):
            manager.create_worktree(agent_id)
            merge_queue.enqueue(agent_id)
        _set_status(db_manager, "A", "merging")

        assert merge_queue.process_next() is None
        assert merge_queue.get_entry("B")["status"] == "queued"

    def test_recover_resets_in_flight_entries(self, manager, merge_queue, db_manager):
        for agent_id in ("A", "B"):
            manager.create_worktree(agent_id)
            merge_queue.enqueue(agent_id)
        _set_status(db_manager, "A", "syncing")
        _set_status(db_manager, "B", "merging")

        assert merge_queue.recover() == 2
        assert {e["status"] for e in merge_queue.get_queue()} == {"queued"}

    def test_follow_up_work_can_be_enqueued_after_merge(self, manager, merge_queue, write_file, trunk_file):
        workspace = manager.create_worktree("A")
        write_file(workspace.worktree_path, "one.txt", "1")
        merge_queue.enqueue("A")
        merge_queue.run_pending()

        write_file(workspace.worktree_path, "two.txt", "2")
        entry = merge_queue.enqueue("A")

        assert entry["status"] == "queued"
        assert entry["merged_at"] is None
        assert entry["position"] == 2

        processed = merge_queue.run_pending()

        assert [e["status"] for e in processed] == ["merged"]
        assert processed[0]["attempts"] == 2
        assert trunk_file("two.txt").strip() == "2"

    def test_requeue_accepts_merged_entry(self, manager, merge_queue):
        manager.create_worktree("A")
        merge_queue.enqueue("A")
        merge_queue.run_pending()
        assert merge_queue.get_entry("A")["status"] == "merged"

        assert merge_queue.requeue("A")["status"] == "queued"

    def test_enqueue_leaves_waiting_entry_in_place(self, manager, merge_queue):
        for agent_id in ("A", "B"):
            manager.create_worktree(agent_id)
            merge_queue.enqueue(agent_id)

        assert merge_queue.enqueue("A")["position"] == 1

    def test_failure_marks_entry_and_reraises(self, manager, merge_queue):
        manager.create_worktree("A")
        merge_queue.enqueue("A")
        manager.destroy_worktree("A")

        with pytest.raises(WorkspaceNotFoundError):
            merge_queue.process_next()

        entry = merge_queue.get_entry("A")
        assert entry["status"] == "failed"
        assert "No workspace" in entry["last_error"]
