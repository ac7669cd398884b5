"""Core data models for the orchestrator."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class AgentStatus(str, enum.Enum):
    """Agent lifecycle states.

    idle -> working <-> waiting-input <-> waiting-approval; stopped and
    error are entered on session/backend loss and left once re-established.
    """

    IDLE = "idle"
    WORKING = "working"
    WAITING_INPUT = "waiting-input"
    WAITING_APPROVAL = "waiting-approval"
    STOPPED = "stopped"
    ERROR = "error"


class IsolationTier(str, enum.Enum):
    """Sandbox strength, weakest first."""

    NONE = "none"
    SANDBOX = "sandbox"
    CONTAINER = "container"
    GVISOR = "gvisor"
    MICROVM = "microvm"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def at_least(self, other: IsolationTier) -> bool:
        return self.rank >= other.rank


_TIER_ORDER = list(IsolationTier)


class HandleState(str, enum.Enum):
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    NOT_CREATED = "not-created"


# ── Value objects ────────────────────────────────────────────────────────────


class ResourceStats(BaseModel):
    """One-shot resource usage of a backend."""

    memory_mb: float = 0.0
    cpu_percent: float = 0.0


class DiffStats(BaseModel):
    """Change statistics of an agent branch against its base."""

    insertions: int = 0
    deletions: int = 0
    files_changed: int = 0


@dataclass
class BackendHandle:
    """A live isolation backend owned by one agent."""

    handle_id: str
    tier: IsolationTier
    agent_id: int
    worktree_path: Path
    state: HandleState = HandleState.RUNNING
    pid: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stats: ResourceStats | None = None


@dataclass
class ParsedStatus:
    """A status signal read from an agent's status directory."""

    status: AgentStatus
    pending_approval: str | None = None
    file_timestamp: float | None = None


# ── Persisted record ─────────────────────────────────────────────────────────


class PersistedAgentRecord(BaseModel):
    """Durable agent identity stored inside each working tree.

    Field names on disk are camelCase. Unknown keys are kept so that files
    written by newer versions survive a load/save cycle.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: int = Field(ge=0)
    name: str = Field(min_length=1)
    session_id: str = Field(alias="sessionId", min_length=1)
    branch: str = Field(min_length=1)
    worktree_path: str = Field(alias="worktreePath", min_length=1)
    repo_path: str = Field(alias="repoPath", min_length=1)
    task_file: str | None = Field(default=None, alias="taskFile")
    isolation_tier: IsolationTier = Field(default=IsolationTier.NONE, alias="isolationTier")
    session_started: bool = Field(default=False, alias="sessionStarted")

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ── Runtime agent ────────────────────────────────────────────────────────────


@dataclass
class Agent:
    """In-memory agent state owned by the orchestrator."""

    id: int
    name: str
    session_id: str
    branch: str
    worktree_path: Path
    repo_path: Path
    isolation_tier: IsolationTier = IsolationTier.NONE
    task_file: str | None = None
    session_started: bool = False
    handle: BackendHandle | None = None
    status: AgentStatus = AgentStatus.IDLE
    pending_approval: str | None = None
    last_interaction: float = 0.0
    diff_stats: DiffStats = field(default_factory=DiffStats)
    # Name of the tmux session last seen alive; cleared when it dies.
    session_name: str | None = None

    def to_record(self) -> PersistedAgentRecord:
        return PersistedAgentRecord(
            id=self.id,
            name=self.name,
            session_id=self.session_id,
            branch=self.branch,
            worktree_path=str(self.worktree_path),
            repo_path=str(self.repo_path),
            task_file=self.task_file,
            isolation_tier=self.isolation_tier,
            session_started=self.session_started,
        )

    @classmethod
    def from_record(cls, record: PersistedAgentRecord) -> Agent:
        return cls(
            id=record.id,
            name=record.name,
            session_id=record.session_id,
            branch=record.branch,
            worktree_path=Path(record.worktree_path),
            repo_path=Path(record.repo_path),
            isolation_tier=record.isolation_tier,
            task_file=record.task_file,
            session_started=record.session_started,
        )
