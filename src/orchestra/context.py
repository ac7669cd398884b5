"""Explicitly wired collaborators for one repository.

Everything the orchestrator talks to is built here and handed to it, so
tests can swap any piece and tear the whole thing down with ``dispose``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from orchestra.config import OrchestraConfig, load_config
from orchestra.coordination import CoordinationInstaller
from orchestra.git import GitWorktrees
from orchestra.isolation import DefinitionLoader, IsolationManager, build_default_registry
from orchestra.isolation.registry import AdapterRegistry
from orchestra.metadata import WorktreeMetadataStore
from orchestra.paths import expand
from orchestra.state_store import AgentStateStore
from orchestra.status import StatusPoller
from orchestra.tmux import TmuxSessionService

logger = logging.getLogger(__name__)


@dataclass
class OrchestratorContext:
    repo_path: Path
    config: OrchestraConfig
    git: GitWorktrees
    metadata: WorktreeMetadataStore
    coordination: CoordinationInstaller
    tmux: TmuxSessionService
    status: StatusPoller
    isolation: IsolationManager
    state_store: AgentStateStore | None = None

    @classmethod
    async def create(
        cls,
        repo_path: Path,
        config: OrchestraConfig | None = None,
        *,
        registry: AdapterRegistry | None = None,
        use_state_store: bool = True,
    ) -> OrchestratorContext:
        repo_path = expand(repo_path)
        config = config or load_config(repo_path)
        if registry is None:
            loader = DefinitionLoader(repo_path, config.isolation)
            registry = build_default_registry(loader, timeout=config.command_timeout)

        state_store = None
        if use_state_store:
            state_store = AgentStateStore(expand(config.state_db_path))
            await state_store.initialize()

        coordination_dir = expand(config.coordination_dir) if config.coordination_dir else None
        return cls(
            repo_path=repo_path,
            config=config,
            git=GitWorktrees(repo_path, timeout=config.command_timeout),
            metadata=WorktreeMetadataStore(config.worktree_directory, config.branch_prefix),
            coordination=CoordinationInstaller(coordination_dir),
            tmux=TmuxSessionService(config.session_prefix),
            status=StatusPoller(),
            isolation=IsolationManager(registry),
            state_store=state_store,
        )

    async def dispose(self) -> None:
        if self.state_store is not None:
            await self.state_store.close()
            self.state_store = None
        logger.debug("Disposed orchestrator context for %s", self.repo_path)
