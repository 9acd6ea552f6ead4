"""Persisted merge queue in front of WorktreeManager.merge_branch."""

from anvil.queue.merge_queue import MergeQueue, QueueStatus

__all__ = ["MergeQueue", "QueueStatus"]
