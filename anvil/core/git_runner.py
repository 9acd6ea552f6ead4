"""Git command execution for the Anvil core.

Everything Anvil does to a repository goes through a GitRunner, so the rest of
the package never touches subprocess or GitPython directly.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

import git
from git.exc import GitCommandError, GitCommandNotFound

from anvil.core.exceptions import GitCommandFailure, GitTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0

DEFAULT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Anvil",
    "GIT_AUTHOR_EMAIL": "anvil@localhost",
    "GIT_COMMITTER_NAME": "Anvil",
    "GIT_COMMITTER_EMAIL": "anvil@localhost",
}

# Hooks run as grandchildren that kill_after_timeout cannot reach
NO_HOOKS = ("-c", "core.hooksPath=/dev/null")

# GitPython replaces stderr with this text when kill_after_timeout fires
_TIMEOUT_MARKER = "did not complete in"


class GitRunner(ABC):
    """Runs one git subcommand in a working directory."""

    @abstractmethod
    def run(self, args: Sequence[str], cwd: Union[str, Path], timeout: Optional[float] = None) -> str:
        """Run ``git <args>`` in cwd.

        Only the git process itself is killed on timeout. Processes git
        spawns, such as hooks or a credential helper, are not and can hold the
        call past its timeout. GitPythonRunner disables hooks and sets a no-op
        editor for that reason.

        Args:
            args: Subcommand and arguments, without the leading "git"
            cwd: Working directory; must exist
            timeout: Seconds before the process is killed (runner default if None)

        Returns:
            Standard output of the command

        Raises:
            GitTimeoutError: the command was killed after timeout
            GitCommandFailure: the command exited non-zero or could not start
        """
        pass


def _unwrap(text: Optional[str], label: str) -> str:
    """Undo GitCommandError's "\\n  stdout: '...'" decoration."""
    if not text:
        return ""
    prefix = f"\n  {label}: '"
    if text.startswith(prefix) and text.endswith("'"):
        return text[len(prefix):-1]
    return text


class GitPythonRunner(GitRunner):
    """GitRunner backed by GitPython's command wrapper."""

    def __init__(self, identity: Optional[Dict[str, str]] = None, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        """Initialize the runner.

        Args:
            identity: GIT_AUTHOR_* / GIT_COMMITTER_* values applied to every call
            timeout: Default per-command timeout in seconds
        """
        self.identity = dict(identity or DEFAULT_IDENTITY)
        self.timeout = timeout
        self._env = {
            **self.identity,
            "GIT_TERMINAL_PROMPT": "0",
            "GIT_EDITOR": "true",
        }

    def run(self, args: Sequence[str], cwd: Union[str, Path], timeout: Optional[float] = None) -> str:
        args = [str(a) for a in args]
        workdir = Path(cwd)
        # GitPython silently falls back to the process cwd for a missing directory
        if not workdir.is_dir():
            raise GitCommandFailure(args, None, "", f"working directory does not exist: {workdir}")

        limit = timeout if timeout is not None else self.timeout
        executable = git.Git.GIT_PYTHON_GIT_EXECUTABLE or "git"
        logger.debug(f"[GIT] {workdir}$ git {' '.join(args)}")

        try:
            status, stdout, stderr = git.Git(str(workdir)).execute(
                [executable, *NO_HOOKS, *args],
                with_extended_output=True,
                kill_after_timeout=limit,
                env=self._env,
            )
        except GitCommandNotFound as e:
            raise GitCommandFailure(args, None, "", str(e)) from e
        except GitCommandError as e:
            stdout = _unwrap(e.stdout, "stdout")
            stderr = _unwrap(e.stderr, "stderr")
            if _TIMEOUT_MARKER in stderr:
                logger.error(f"[GIT] Timed out after {limit}s: git {' '.join(args)} in {workdir}")
                raise GitTimeoutError(args, e.status, stdout, stderr) from e
            logger.debug(f"[GIT] Exit {e.status}: git {' '.join(args)}: {stderr.strip()[:200]}")
            raise GitCommandFailure(args, e.status, stdout, stderr) from e

        return stdout
