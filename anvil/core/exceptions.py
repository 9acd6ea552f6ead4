"""Typed failures raised by the Anvil core."""

from typing import Optional, Sequence


class AnvilError(Exception):
    """Base class for all Anvil errors."""


class PreconditionError(AnvilError):
    """A call was made against state that does not allow it."""


class TrunkMissingError(PreconditionError):
    """The trunk repository has not been initialized."""


class TrunkStateError(PreconditionError):
    """The trunk working directory is dirty, mid-merge or off the base branch."""


class InvalidAgentIdError(PreconditionError):
    """The agent id cannot be used as a branch component and directory name."""


class WorkspaceExistsError(PreconditionError):
    """A live workspace already exists for the agent."""


class WorkspaceNotFoundError(PreconditionError):
    """No live workspace exists for the agent."""


class QueueEntryNotFoundError(PreconditionError):
    """The agent has no entry in the merge queue."""


class TrunkInitError(AnvilError):
    """The trunk repository could not be created."""


class MergeLockTimeout(AnvilError, TimeoutError):
    """The trunk merge lock could not be acquired in time."""


class GitCommandFailure(AnvilError):
    """A git subprocess exited with a non-zero status."""

    def __init__(
        self,
        args: Sequence[str],
        status: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        self.command = list(args)
        self.status = status
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        super().__init__(
            f"git {' '.join(self.command)} failed (status={status}): "
            f"{self.stderr.strip() or self.stdout.strip()}"
        )

    @property
    def output(self) -> str:
        """Combined stdout and stderr, for matching on git's messages."""
        return f"{self.stdout}\n{self.stderr}"


class GitTimeoutError(GitCommandFailure, TimeoutError):
    """A git subprocess exceeded its timeout and was killed.

    The working directory it ran in may be left in an indeterminate state.
    """
