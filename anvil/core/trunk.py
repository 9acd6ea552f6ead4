"""The trunk repository every agent workspace ultimately merges into."""

import fcntl
import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from anvil.core.exceptions import (
    GitCommandFailure,
    MergeLockTimeout,
    TrunkInitError,
    TrunkMissingError,
)
from anvil.core.git_runner import GitRunner

logger = logging.getLogger(__name__)

MERGE_LOCK_FILE = "anvil-merge.lock"

# One in-process mutex per trunk directory, shared by every TrunkRepository
# object that points at it.
_trunk_mutexes: Dict[str, threading.Lock] = {}
_registry_lock = threading.Lock()


def _mutex_for(root: Path) -> threading.Lock:
    key = str(root)
    with _registry_lock:
        if key not in _trunk_mutexes:
            _trunk_mutexes[key] = threading.Lock()
        return _trunk_mutexes[key]


class TrunkRepository:
    """Shared integration repository, checked out on the base branch."""

    def __init__(self, root_path: Union[str, Path], runner: GitRunner, base_branch: str = "main"):
        """Initialize the trunk handle. Does not touch the filesystem.

        Args:
            root_path: Directory of the trunk working copy
            runner: Runner for all git commands
            base_branch: Integration branch name
        """
        self.root_path = Path(root_path).resolve()
        self.runner = runner
        self.base_branch = base_branch
        self._mutex = _mutex_for(self.root_path)

    @property
    def git_dir(self) -> Path:
        return self.root_path / ".git"

    def has_repo(self) -> bool:
        """True when the trunk has git metadata. Never raises."""
        try:
            return self.git_dir.exists()
        except OSError:
            return False

    def init_repo(self) -> None:
        """Create the trunk with an empty root commit on the base branch.

        Existing repositories are left alone.

        Raises:
            TrunkInitError: the directory cannot be created or initialized
        """
        if self.has_repo():
            logger.info(f"[TRUNK] Repository already initialized at {self.root_path}")
            return

        try:
            self.root_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TrunkInitError(f"Cannot create trunk directory {self.root_path}: {e}") from e

        try:
            self.runner.run(["init", "-b", self.base_branch], self.root_path)
            # Root commit so every worker branch shares an ancestor
            self.runner.run(
                ["commit", "--allow-empty", "--no-verify", "-m", "Initial commit"],
                self.root_path,
            )
        except GitCommandFailure as e:
            raise TrunkInitError(f"Cannot initialize trunk at {self.root_path}: {e}") from e

        logger.info(f"[TRUNK] Initialized repository at {self.root_path} on '{self.base_branch}'")

    def require(self) -> None:
        """Raise TrunkMissingError unless the trunk exists."""
        if not self.has_repo():
            raise TrunkMissingError(f"No trunk repository at {self.root_path}; call init_repo() first")

    def tip(self) -> str:
        """SHA of the base branch."""
        return self.runner.run(["rev-parse", self.base_branch], self.root_path).strip()

    def current_branch(self) -> Optional[str]:
        """Branch checked out in the trunk, or None when detached."""
        try:
            return self.runner.run(["symbolic-ref", "--short", "-q", "HEAD"], self.root_path).strip() or None
        except GitCommandFailure:
            return None

    def status(self) -> str:
        """``git status --short`` of the trunk working directory."""
        return self.runner.run(["status", "--short"], self.root_path)

    def is_clean(self) -> bool:
        return not self.runner.run(["status", "--porcelain"], self.root_path).strip()

    def merge_in_progress(self) -> bool:
        return (self.git_dir / "MERGE_HEAD").exists()

    def abort_merge(self) -> bool:
        """Abort an in-progress merge. Returns False when there was nothing to abort."""
        try:
            self.runner.run(["merge", "--abort"], self.root_path)
            return True
        except GitCommandFailure as e:
            logger.debug(f"[TRUNK] merge --abort had nothing to do: {e}")
            return False

    @contextmanager
    def merge_lock(self, holder: str, timeout: float = 300.0) -> Iterator[None]:
        """Hold exclusive access to the trunk working directory.

        Takes the per-directory thread mutex, then an advisory flock on a file
        inside .git so separate processes serialize as well.

        Raises:
            MergeLockTimeout: either lock could not be taken within timeout
        """
        start_time = time.monotonic()
        logger.info(f"[GIT-MERGE:{holder}] Waiting for trunk lock on {self.root_path}")

        if not self._mutex.acquire(timeout=timeout):
            raise MergeLockTimeout(f"[GIT-MERGE:{holder}] Trunk lock not acquired after {timeout}s")

        lock_file = None
        try:
            lock_file = open(self.git_dir / MERGE_LOCK_FILE, "w")
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start_time > timeout:
                        raise MergeLockTimeout(
                            f"[GIT-MERGE:{holder}] Trunk file lock not acquired after {timeout}s"
                        )
                    time.sleep(0.1)

            logger.info(
                f"[GIT-MERGE:{holder}] Trunk lock acquired after {time.monotonic() - start_time:.2f}s"
            )
            yield
        finally:
            if lock_file is not None:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
                finally:
                    lock_file.close()
            self._mutex.release()
            logger.info(f"[GIT-MERGE:{holder}] Trunk lock released")
