"""IsolationManager -- owns the backend handles of live agents.

Responsibilities:
1. At most one handle per agent: a second create for the same agent
   returns the existing handle.
2. Route exec/stats/destroy to the adapter that created the handle.
3. Re-adopt handles found among live backends after a restart.
4. Reclaim backends whose working tree has no agent metadata any more.
"""

from __future__ import annotations

import logging
from pathlib import Path

from orchestra.errors import BackendUnavailableError, HandleNotFoundError
from orchestra.isolation.base import IsolationAdapter
from orchestra.isolation.registry import AdapterRegistry
from orchestra.models import BackendHandle, HandleState, IsolationTier, ResourceStats

logger = logging.getLogger(__name__)


class IsolationManager:
    def __init__(self, registry: AdapterRegistry) -> None:
        self.registry = registry
        self._handles: dict[int, BackendHandle] = {}

    def _adapter(self, tier: IsolationTier) -> IsolationAdapter:
        adapter = self.registry.get(tier)
        if adapter is None:
            raise BackendUnavailableError(f"No backend registered for tier {tier.value!r}")
        return adapter

    def handle_for(self, agent_id: int) -> BackendHandle | None:
        return self._handles.get(agent_id)

    def handles(self) -> list[BackendHandle]:
        return list(self._handles.values())

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def create(
        self,
        agent_id: int,
        tier: IsolationTier,
        worktree_path: Path,
        session_id: str | None = None,
        definition_ref: str | None = None,
    ) -> BackendHandle:
        existing = self._handles.get(agent_id)
        if existing is not None:
            return existing

        adapter = self._adapter(tier)
        handle_id = await adapter.create(definition_ref, worktree_path, agent_id, session_id)
        handle = BackendHandle(
            handle_id=handle_id,
            tier=tier,
            agent_id=agent_id,
            worktree_path=Path(worktree_path),
        )
        self._handles[agent_id] = handle
        return handle

    def adopt(self, handle: BackendHandle) -> None:
        """Track a handle rediscovered from a live backend."""
        self._handles.setdefault(handle.agent_id, handle)

    async def destroy(self, agent_id: int) -> None:
        handle = self._handles.pop(agent_id, None)
        if handle is None:
            return
        await self._adapter(handle.tier).destroy(handle.handle_id)
        handle.state = HandleState.STOPPED
        logger.info("Destroyed %s backend %s of agent %d", handle.tier.value, handle.handle_id, agent_id)

    async def destroy_all(self) -> None:
        for agent_id in list(self._handles):
            try:
                await self.destroy(agent_id)
            except Exception:
                logger.warning("Failed to destroy backend of agent %d", agent_id, exc_info=True)

    async def exec(self, agent_id: int, command: str) -> str:
        handle = self._handles.get(agent_id)
        if handle is None:
            raise HandleNotFoundError(f"Agent {agent_id} has no isolation backend")
        return await self._adapter(handle.tier).exec(handle.handle_id, command)

    async def stats(self, agent_id: int) -> ResourceStats | None:
        handle = self._handles.get(agent_id)
        if handle is None:
            return None
        handle.stats = await self._adapter(handle.tier).get_stats(handle.handle_id)
        return handle.stats

    def interactive_prefix(self, agent_id: int) -> list[str]:
        handle = self._handles.get(agent_id)
        if handle is None:
            return []
        return self._adapter(handle.tier).interactive_prefix(handle.handle_id)

    # ── Discovery / garbage collection ────────────────────────────────────────

    async def discover(self) -> list[BackendHandle]:
        """Live backends every adapter can find, de-duplicated by handle id."""
        seen: dict[str, BackendHandle] = {}
        for adapter in self.registry.adapters():
            for handle in await adapter.list_managed():
                seen.setdefault(handle.handle_id, handle)
        return list(seen.values())

    async def _destroy_found(self, handle: BackendHandle) -> None:
        tracked = self._handles.get(handle.agent_id)
        if tracked is not None and tracked.handle_id == handle.handle_id:
            del self._handles[handle.agent_id]
        await self._adapter(handle.tier).destroy(handle.handle_id)

    async def cleanup_by_worktree(self, worktree_path: Path) -> int:
        """Destroy every backend labelled with *worktree_path*."""
        removed = 0
        for handle in await self.discover():
            if handle.worktree_path == Path(worktree_path):
                await self._destroy_found(handle)
                removed += 1
        return removed

    async def cleanup_orphans(self, live_worktrees: set[Path], scope: Path | None = None) -> int:
        """Destroy backends whose working tree is not among *live_worktrees*.

        With *scope*, only backends whose tree lies under it are considered;
        other repositories' agents share the same docker daemon.
        """
        removed = 0
        for handle in await self.discover():
            if handle.worktree_path in live_worktrees:
                continue
            if scope is not None and not handle.worktree_path.is_relative_to(scope):
                continue
            try:
                await self._destroy_found(handle)
                removed += 1
                logger.info("Reclaimed orphaned backend %s (%s)", handle.handle_id, handle.worktree_path)
            except Exception:
                logger.warning("Failed to reclaim backend %s", handle.handle_id, exc_info=True)
        return removed
