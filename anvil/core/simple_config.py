"""Configuration for Anvil.

Values come from, in increasing priority: field defaults, a YAML file
(``ANVIL_CONFIG`` or ``anvil.yaml`` in the working directory), and ``ANVIL_*``
environment variables. A ``.env`` file is loaded before the environment is read.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "anvil.yaml"
ENV_PREFIX = "ANVIL_"


class AnvilConfig(BaseModel):
    """Settings for one Anvil root (a trunk plus its worktrees)."""

    root_path: Path = Field(default=Path("./anvil-data"), description="Directory holding the trunk and worktrees")
    repo_dir_name: str = Field(default="repo", description="Trunk directory under root_path")
    worktrees_dir_name: str = Field(default="worktrees", description="Worktrees directory under root_path")
    base_branch: str = Field(default="main", description="Integration branch every agent merges into")
    worktree_branch_prefix: str = Field(default="worker/", description="Prefix of per-agent branches")

    git_timeout_seconds: float = Field(default=30.0, description="Upper bound for a single git subprocess")
    merge_lock_timeout_seconds: float = Field(default=300.0, description="How long a merge waits for the trunk lock")
    committer_name: str = Field(default="Anvil")
    committer_email: str = Field(default="anvil@localhost")

    database_path: str = Field(
        default=":memory:", description="SQLite path for the journal and merge queue; :memory: lasts one process"
    )

    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=8700)
    log_level: str = Field(default="INFO")

    @field_validator("git_timeout_seconds", "merge_lock_timeout_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("worktree_branch_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v or v.startswith("/") or " " in v:
            raise ValueError("worktree_branch_prefix must be a non-empty ref path segment")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level

    @property
    def repo_path(self) -> Path:
        return (self.root_path / self.repo_dir_name).resolve()

    @property
    def worktrees_path(self) -> Path:
        return (self.root_path / self.worktrees_dir_name).resolve()

    @property
    def git_identity(self) -> Dict[str, str]:
        """Environment that pins author and committer for every git call."""
        return {
            "GIT_AUTHOR_NAME": self.committer_name,
            "GIT_AUTHOR_EMAIL": self.committer_email,
            "GIT_COMMITTER_NAME": self.committer_name,
            "GIT_COMMITTER_EMAIL": self.committer_email,
        }

    @classmethod
    def from_yaml_content(cls, content: Dict[str, Any]) -> "AnvilConfig":
        """Create a config from parsed YAML, ignoring unknown keys."""
        known = {k: v for k, v in (content or {}).items() if k in cls.model_fields}
        unknown = set(content or {}) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
        return cls(**known)

    @classmethod
    def load(cls, config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> "AnvilConfig":
        """Build a config from YAML and environment.

        Args:
            config_file: Explicit YAML path; falls back to ANVIL_CONFIG then anvil.yaml
            environ: Environment mapping (defaults to os.environ)
        """
        if environ is None:
            load_dotenv()
            environ = dict(os.environ)

        data: Dict[str, Any] = {}
        path = Path(config_file or environ.get("ANVIL_CONFIG") or DEFAULT_CONFIG_FILE)
        if path.exists():
            with open(path, "r") as f:
                data.update(yaml.safe_load(f) or {})
            logger.info(f"Loaded config from {path}")
        elif config_file:
            raise FileNotFoundError(f"Config file not found: {config_file}")

        for name in cls.model_fields:
            env_key = f"{ENV_PREFIX}{name.upper()}"
            if env_key in environ:
                data[name] = environ[env_key]

        return cls.from_yaml_content(data)


_config: Optional[AnvilConfig] = None


def get_config() -> AnvilConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = AnvilConfig.load()
    return _config


def reset_config() -> None:
    """Forget the cached config (tests)."""
    global _config
    _config = None
