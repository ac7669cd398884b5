"""The contract every isolation backend implements."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from pathlib import Path

from orchestra.models import BackendHandle, IsolationTier, ResourceStats


@dataclass
class DisplayInfo:
    """Presentation metadata derived from a definition, never from a live backend."""

    name: str
    tier: IsolationTier
    description: str
    memory: str | None = None
    cpus: str | None = None
    source: str | None = None  # image or kernel


class IsolationAdapter(abc.ABC):
    """Lifecycle contract: create / exec / stats / destroy.

    ``destroy`` must be a silent no-op for handles the backend no longer
    (or never) knew about, so crash recovery can clean up twice.
    ``create`` must release whatever it started if it fails half way.
    """

    def __init__(self, tier: IsolationTier) -> None:
        self.tier = tier

    @abc.abstractmethod
    async def is_available(self) -> bool:
        """Whether this backend can run on this host. Never raises."""

    @abc.abstractmethod
    def get_display_info(self, definition_ref: str | None = None) -> DisplayInfo: ...

    @abc.abstractmethod
    async def create(
        self,
        definition_ref: str | None,
        worktree_path: Path,
        agent_id: int,
        session_id: str | None = None,
    ) -> str:
        """Start a backend for an agent and return its handle id."""

    @abc.abstractmethod
    async def exec(self, handle_id: str, command: str) -> str:
        """Run a shell command inside the backend and return its stdout."""

    @abc.abstractmethod
    async def destroy(self, handle_id: str) -> None: ...

    async def get_stats(self, handle_id: str) -> ResourceStats | None:
        return None

    def interactive_prefix(self, handle_id: str) -> list[str]:
        """argv prefix that runs an interactive command inside the backend.

        Empty when the agent's terminal runs on the host.
        """
        return []

    async def list_managed(self) -> list[BackendHandle]:
        """Live backends this adapter can find on its own, for rediscovery."""
        return []
