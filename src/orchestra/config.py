"""Configuration loading.

Reads ``~/.orchestra/config.yaml`` (user) and ``<repo>/.orchestra/config.yaml``
(repository). Repository values win per top-level key. Pydantic models
validate the merged result; a handful of environment variables override it
for scripted use.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from orchestra.models import IsolationTier
from orchestra.paths import expand

logger = logging.getLogger(__name__)

METADATA_DIRNAME = ".orchestra"
CONFIG_FILENAME = "config.yaml"

# Host paths that must never be mounted into a sandbox.
BLOCKED_HOST_PATHS = (
    "~/.ssh",
    "~/.aws",
    "~/.config/gh",
    "~/.gitconfig",
    "~/.netrc",
    "~/.docker/config.json",
    "~/.kube/config",
)

_SECRET_KEY = re.compile(r"TOKEN|SECRET|PASSWORD|PASSWD|API_KEY|PRIVATE_KEY|CREDENTIAL", re.I)
_SIZE = re.compile(r"^\d+(\.\d+)?[bkmgt]?$", re.I)


def user_dir() -> Path:
    return Path.home() / METADATA_DIRNAME


# ── Config Models ────────────────────────────────────────────────────────────


class MountConfig(BaseModel):
    """An extra host directory exposed to a sandbox.

    ``source`` may be absolute, ``~/``-relative or ``./``-relative (resolved
    against the agent's working tree). ``mode`` has no default.
    """

    source: str
    target: str
    mode: Literal["ro", "rw"]

    @field_validator("source")
    @classmethod
    def _reject_credentials(cls, v: str) -> str:
        if v.startswith("./"):
            return v
        resolved = expand(v)
        for blocked in BLOCKED_HOST_PATHS:
            blocked_path = expand(blocked)
            if resolved == blocked_path or blocked_path in resolved.parents:
                raise ValueError(f"Mount source {v!r} exposes credentials ({blocked})")
        return v

    @field_validator("target")
    @classmethod
    def _absolute_target(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Mount target must be an absolute path, got {v!r}")
        return v

    @property
    def read_only(self) -> bool:
        return self.mode == "ro"

    def resolve_source(self, worktree: Path) -> Path:
        if self.source.startswith("./"):
            return worktree / self.source[2:]
        return expand(self.source)


class ResourceLimits(BaseModel):
    memory: str = "4g"
    cpus: str = "2"
    pids: int = Field(default=100, ge=1)

    @field_validator("memory")
    @classmethod
    def _valid_size(cls, v: str) -> str:
        if not _SIZE.match(v):
            raise ValueError(f"Invalid memory size {v!r} (expected e.g. 512m, 4g)")
        return v

    @field_validator("cpus")
    @classmethod
    def _valid_cpus(cls, v: str) -> str:
        try:
            if float(v) <= 0:
                raise ValueError
        except ValueError:
            raise ValueError(f"Invalid cpu count {v!r}") from None
        return v


class IsolationConfig(BaseModel):
    """Repository-level isolation policy and sandbox inputs."""

    minimum_tier: IsolationTier = IsolationTier.NONE
    recommended_tier: IsolationTier | None = None
    definition: str | None = Field(
        default=None, description="Definition reference, e.g. 'repo:dev' or 'user:heavy'"
    )
    image: str = "orchestra-agent:latest"
    kernel_path: str | None = None
    rootfs_path: str | None = None
    mounts: list[MountConfig] = Field(default_factory=list)
    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    environment: dict[str, str] = Field(default_factory=dict)
    # Consumed by the network proxy, which is not part of this package.
    allowed_domains: list[str] = Field(default_factory=list)

    @field_validator("environment")
    @classmethod
    def _no_secrets(cls, v: dict[str, str]) -> dict[str, str]:
        for key in v:
            if _SECRET_KEY.search(key):
                raise ValueError(f"Environment variable {key!r} looks like a secret")
        return v

    @model_validator(mode="after")
    def _recommended_not_below_minimum(self) -> IsolationConfig:
        if self.recommended_tier is not None and not self.recommended_tier.at_least(
            self.minimum_tier
        ):
            raise ValueError(
                f"recommended_tier {self.recommended_tier.value!r} is below "
                f"minimum_tier {self.minimum_tier.value!r}"
            )
        return self

    @property
    def default_tier(self) -> IsolationTier:
        return self.recommended_tier or self.minimum_tier


class OrchestraConfig(BaseModel):
    """Top-level configuration."""

    worktree_directory: str = ".worktrees"
    branch_prefix: str = "agent"
    session_prefix: str = "opus"
    status_poll_interval: float = Field(default=1.0, gt=0)
    diff_poll_interval: float = Field(default=60.0, ge=0, description="0 disables refresh")
    command_timeout: float = Field(default=60.0, gt=0)
    agent_command: str = "claude"
    state_db_path: str = "~/.orchestra/state.db"
    coordination_dir: str | None = None
    max_batch: int = Field(default=100, ge=1)
    isolation: IsolationConfig = Field(default_factory=IsolationConfig)

    @field_validator("branch_prefix", "session_prefix")
    @classmethod
    def _plain_prefix(cls, v: str) -> str:
        if not re.fullmatch(r"[A-Za-z0-9][A-Za-z0-9_-]*", v):
            raise ValueError(f"Prefix must be alphanumeric (with - or _), got {v!r}")
        return v

    def worktree_root(self, repo_path: Path) -> Path:
        return expand(self.worktree_directory, base=repo_path)


# ── Config Loader ────────────────────────────────────────────────────────────


def repo_config_path(repo_path: Path) -> Path:
    return repo_path / METADATA_DIRNAME / CONFIG_FILENAME


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a mapping, got {type(raw).__name__}")
    return raw


def load_config(repo_path: Path, user_config: Path | None = None) -> OrchestraConfig:
    """Load and validate configuration for *repo_path*.

    Raises:
        ValueError: If either file is malformed or fails validation.
    """
    raw = _read_yaml(user_config or user_dir() / CONFIG_FILENAME)
    raw.update(_read_yaml(repo_config_path(repo_path)))

    config = OrchestraConfig(**raw)

    # Environment variable overrides
    worktree_dir = os.environ.get("ORCHESTRA_WORKTREE_DIR")
    if worktree_dir:
        config.worktree_directory = worktree_dir

    session_prefix = os.environ.get("ORCHESTRA_SESSION_PREFIX")
    if session_prefix:
        config.session_prefix = session_prefix

    state_db = os.environ.get("ORCHESTRA_STATE_DB")
    if state_db:
        config.state_db_path = state_db

    diff_interval = os.environ.get("ORCHESTRA_DIFF_POLL_INTERVAL")
    if diff_interval is not None:
        config.diff_poll_interval = float(diff_interval)

    logger.debug("Loaded config for %s: %s", repo_path, config.model_dump())
    return config


def set_config_value(repo_path: Path, key: str, value: str) -> OrchestraConfig:
    """Set one dotted key (``isolation.minimum_tier``) in the repo config.

    *value* is parsed as YAML so numbers, booleans and lists keep their type.
    The merged result is validated before anything is written.
    """
    parts = key.split(".")
    model: type[BaseModel] = OrchestraConfig
    for i, part in enumerate(parts):
        if part not in model.model_fields:
            raise ValueError(f"Unknown config key: {key}")
        annotation = model.model_fields[part].annotation
        if i < len(parts) - 1:
            if not (isinstance(annotation, type) and issubclass(annotation, BaseModel)):
                raise ValueError(f"Config key {'.'.join(parts[: i + 1])} has no sub-keys")
            model = annotation

    path = repo_config_path(repo_path)
    raw = _read_yaml(path)
    node = raw
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = yaml.safe_load(value)

    config = OrchestraConfig(**raw)

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(raw, f, sort_keys=False)
    logger.info("Set %s = %r in %s", key, value, path)
    return config
