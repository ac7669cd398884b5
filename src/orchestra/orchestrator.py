"""Agent lifecycle orchestration.

The AgentOrchestrator owns the in-memory agent map for one repository and
coordinates the other services:
- allocates ids (lowest free, reusing ids freed by deletion) and names
- creates, adopts or restores working trees
- persists metadata into each tree (and a copy into the fallback store)
- creates isolation backends for non-trivial tiers
- keeps one tmux session per agent, named from its session id

State is rebuilt from working-tree metadata on startup; no central
database is authoritative. Every mutation of one agent happens under that
agent's lock so concurrent operations on different agents never interleave
on the same record.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from orchestra.errors import (
    AgentNotFoundError,
    BackendUnavailableError,
    InvalidCountError,
    NameCollisionError,
    OrchestraError,
)
from orchestra.models import Agent, AgentStatus, IsolationTier, PersistedAgentRecord
from orchestra.names import agent_name, branch_name, sanitize_name

if TYPE_CHECKING:
    from orchestra.context import OrchestratorContext
    from orchestra.isolation.registry import TierResolution

logger = logging.getLogger(__name__)


@dataclass
class _Plan:
    kind: str  # "new" | "adopt" | "restore"
    agent_id: int
    name: str
    path: Path
    record: PersistedAgentRecord | None = None


@dataclass
class CreateResult:
    """Outcome of a create batch."""

    resolution: TierResolution
    created: list[Agent] = field(default_factory=list)
    adopted: list[Agent] = field(default_factory=list)
    restored: list[Agent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def agents(self) -> list[Agent]:
        return sorted(self.created + self.adopted + self.restored, key=lambda a: a.id)


class AgentOrchestrator:
    def __init__(self, ctx: OrchestratorContext) -> None:
        self.ctx = ctx
        self._agents: dict[int, Agent] = {}
        self._order: list[int] = []
        self._locks: dict[int, asyncio.Lock] = {}
        self._poll_tasks: list[asyncio.Task] = []

    # ── Queries ──────────────────────────────────────────────────────────────

    def agents(self) -> list[Agent]:
        return [self._agents[i] for i in self._order]

    def get(self, key: int | str) -> Agent:
        """Look an agent up by id, or by name (``"3"`` counts as an id)."""
        if isinstance(key, str) and key.isdigit():
            key = int(key)
        if isinstance(key, int):
            agent = self._agents.get(key)
        else:
            agent = next((a for a in self._agents.values() if a.name == key), None)
        if agent is None:
            raise AgentNotFoundError(f"No agent {key!r}")
        return agent

    def pending_approvals(self) -> list[Agent]:
        return [a for a in self.agents() if a.pending_approval]

    def waiting_count(self) -> int:
        waiting = (AgentStatus.WAITING_INPUT, AgentStatus.WAITING_APPROVAL)
        return sum(1 for a in self._agents.values() if a.status in waiting)

    def session_name(self, agent: Agent) -> str:
        return self.ctx.tmux.session_name(agent)

    def worktree_path_for(self, name: str) -> Path:
        cfg = self.ctx.config
        return cfg.worktree_root(self.ctx.repo_path) / branch_name(name, cfg.branch_prefix)

    # ── Internals ────────────────────────────────────────────────────────────

    def _lock(self, agent_id: int) -> asyncio.Lock:
        return self._locks.setdefault(agent_id, asyncio.Lock())

    def _register(self, agent: Agent) -> None:
        self._agents[agent.id] = agent
        if agent.id not in self._order:
            self._order.append(agent.id)

    def _unregister(self, agent_id: int) -> None:
        self._agents.pop(agent_id, None)
        if agent_id in self._order:
            self._order.remove(agent_id)
        self._locks.pop(agent_id, None)

    async def _persist(self, agent: Agent) -> None:
        self.ctx.metadata.save(agent)
        if self.ctx.state_store is not None:
            try:
                await self.ctx.state_store.save(agent.to_record())
            except Exception:
                logger.warning("Failed to mirror agent %s into the state store", agent.name)

    async def _start_backend(
        self, agent: Agent, warnings: list[str], degrade: bool = True
    ) -> None:
        """Create the agent's isolation backend.

        On failure the agent drops to no isolation, unless *degrade* is
        False: then it keeps its tier and is left without a handle.
        """
        if agent.isolation_tier is IsolationTier.NONE:
            return
        try:
            agent.handle = await self.ctx.isolation.create(
                agent.id,
                agent.isolation_tier,
                agent.worktree_path,
                agent.session_id,
                self.ctx.config.isolation.definition,
            )
        except Exception as exc:
            agent.handle = None
            if not degrade:
                message = (
                    f"{agent.name}: cannot start {agent.isolation_tier.value} backend ({exc})"
                )
                logger.warning(message)
                warnings.append(message)
                return
            message = (
                f"{agent.name}: {agent.isolation_tier.value} isolation failed ({exc}); "
                f"running without isolation"
            )
            logger.warning(message)
            warnings.append(message)
            agent.isolation_tier = IsolationTier.NONE

    async def _ensure_backend(self, agent: Agent) -> None:
        """Recreate a lost backend before anything runs for an isolated agent.

        An agent whose tier asks for isolation never runs on the host: if the
        backend cannot be brought back the agent goes to ERROR and the caller
        gets BackendUnavailableError.
        """
        if agent.isolation_tier is IsolationTier.NONE or agent.handle is not None:
            return
        logger.warning(
            "Agent %s has no %s backend; recreating it", agent.name, agent.isolation_tier.value
        )
        warnings: list[str] = []
        await self._start_backend(agent, warnings, degrade=False)
        if agent.handle is None:
            agent.status = AgentStatus.ERROR
            raise BackendUnavailableError(warnings[0])

    # ── Create ───────────────────────────────────────────────────────────────

    async def create_agents(
        self,
        count: int,
        tier: IsolationTier | None = None,
        allow_fallback: bool = False,
        start_sessions: bool = True,
    ) -> CreateResult:
        """Create (or restore) *count* agents.

        Validation and tier negotiation happen before anything touches disk.
        Each id's canonical working tree decides what happens to it: a tree
        with valid metadata is restored, a tree without metadata is adopted
        in place, no tree means a fresh worktree and branch.
        """
        cfg = self.ctx.config
        if not 1 <= count <= cfg.max_batch:
            raise InvalidCountError(f"Agent count must be between 1 and {cfg.max_batch}, got {count}")

        iso = cfg.isolation
        resolution = await self.ctx.isolation.registry.resolve_tier(
            tier or iso.default_tier, iso.minimum_tier, allow_fallback
        )
        if not await self.ctx.git.is_repository():
            raise OrchestraError(f"{self.ctx.repo_path} is not a git repository")

        self.ctx.coordination.ensure_gitignore(self.ctx.repo_path, cfg.worktree_directory)
        base = await self.ctx.git.current_branch()

        plans = self._plan(count)
        result = CreateResult(resolution=resolution)
        if resolution.fell_back:
            result.warnings.append(
                f"Isolation tier {resolution.requested.value} unavailable, using {resolution.tier.value}"
            )

        outcomes = await asyncio.gather(
            *(self._realize(plan, resolution.tier, base, result.warnings) for plan in plans),
            return_exceptions=True,
        )
        for plan, outcome in zip(plans, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Failed to create agent %s: %s", plan.name, outcome)
                result.errors[plan.name] = str(outcome)
                continue
            self._register(outcome)
            {"new": result.created, "adopt": result.adopted, "restore": result.restored}[
                plan.kind
            ].append(outcome)

        if start_sessions:
            for agent in result.agents:
                try:
                    await self.ensure_session(agent)
                except Exception as exc:
                    result.warnings.append(f"{agent.name}: could not start session ({exc})")
                    logger.warning("Could not start session for %s: %s", agent.name, exc)
        return result

    def _plan(self, count: int) -> list[_Plan]:
        used = set(self._agents)
        live_paths = {a.worktree_path for a in self._agents.values()}
        plans: list[_Plan] = []
        candidate = 0
        while len(plans) < count:
            candidate += 1
            if candidate in used:
                continue
            name = agent_name(candidate)
            path = self.worktree_path_for(name)
            if path in live_paths:
                # a live agent was renamed into this id's canonical name
                continue
            if path.exists():
                record = self.ctx.metadata.load(path)
                if record is not None:
                    if record.id in used:
                        continue
                    used.add(record.id)
                    plans.append(_Plan("restore", record.id, record.name, path, record))
                    continue
                plans.append(_Plan("adopt", candidate, name, path))
            else:
                plans.append(_Plan("new", candidate, name, path))
            used.add(candidate)
        return plans

    async def _realize(
        self, plan: _Plan, tier: IsolationTier, base: str, warnings: list[str]
    ) -> Agent:
        if plan.kind == "restore":
            agent = Agent.from_record(plan.record.model_copy(update={"worktree_path": str(plan.path)}))
            await self._reattach_backend(agent)
            if agent.handle is None:
                await self._start_backend(agent, warnings)
            await self._persist(agent)
            logger.info("Restored agent %s (%d) from %s", agent.name, agent.id, plan.path)
            return agent

        if plan.kind == "adopt":
            agent = await self._adopt(plan, tier)
            if agent.handle is None:
                await self._start_backend(agent, warnings)
            await self._persist(agent)
            logger.info("Adopted existing worktree %s as agent %s", plan.path, agent.name)
            return agent

        branch = branch_name(plan.name, self.ctx.config.branch_prefix)
        await self.ctx.git.create_worktree(plan.path, branch, base)
        agent = Agent(
            id=plan.agent_id,
            name=plan.name,
            session_id=str(uuid.uuid4()),
            branch=branch,
            worktree_path=plan.path,
            repo_path=self.ctx.repo_path,
            isolation_tier=tier,
        )
        self.ctx.coordination.install(plan.path, self.ctx.repo_path)
        await self._persist(agent)
        await self._start_backend(agent, warnings)
        if agent.isolation_tier is not tier:
            await self._persist(agent)
        logger.info("Created agent %s (%d) on %s", agent.name, agent.id, branch)
        return agent

    async def _adopt(self, plan: _Plan, tier: IsolationTier) -> Agent:
        """Turn a metadata-less tree into an agent without touching its files.

        The fallback store supplies the old identity when it knows this tree.
        """
        store = self.ctx.state_store
        if store is not None:
            stored = await store.get(str(self.ctx.repo_path), plan.agent_id)
            if stored is not None and Path(stored.worktree_path) == plan.path:
                logger.info("Recovered identity of %s from the state store", plan.name)
                agent = Agent.from_record(stored)
                await self._reattach_backend(agent)
                return agent

        try:
            branch = await self.ctx.git.current_branch(plan.path)
        except Exception:
            branch = branch_name(plan.name, self.ctx.config.branch_prefix)
        return Agent(
            id=plan.agent_id,
            name=plan.name,
            session_id=str(uuid.uuid4()),
            branch=branch,
            worktree_path=plan.path,
            repo_path=self.ctx.repo_path,
            isolation_tier=tier,
        )

    async def _reattach_backend(self, agent: Agent) -> None:
        if agent.isolation_tier is IsolationTier.NONE:
            return
        for handle in await self.ctx.isolation.discover():
            if handle.worktree_path == agent.worktree_path:
                handle.tier = agent.isolation_tier
                handle.agent_id = agent.id
                self.ctx.isolation.adopt(handle)
                agent.handle = handle
                return

    # ── Delete / rename ──────────────────────────────────────────────────────

    async def delete_agent(self, key: int | str) -> Agent:
        """Tear an agent down. Every step is best-effort; the record always goes."""
        agent = self.get(key)
        async with self._lock(agent.id):
            name = self.session_name(agent)
            try:
                await self.ctx.tmux.kill_session(name)
            except Exception:
                logger.warning("Failed to kill session %s of %s", name, agent.name)
            agent.session_name = None

            try:
                await self.ctx.isolation.destroy(agent.id)
            except Exception:
                logger.warning("Failed to destroy backend of %s", agent.name)
            agent.handle = None

            if agent.isolation_tier is not IsolationTier.NONE:
                try:
                    await self.ctx.isolation.cleanup_by_worktree(agent.worktree_path)
                except Exception:
                    logger.warning("Failed to reclaim leftover backends of %s", agent.name)

            try:
                await self.ctx.git.remove_worktree(agent.worktree_path)
            except Exception:
                logger.warning("Failed to remove worktree %s", agent.worktree_path)

            try:
                await self.ctx.git.delete_branch(agent.branch)
            except Exception:
                logger.warning("Failed to delete branch %s", agent.branch)

            if self.ctx.state_store is not None:
                try:
                    await self.ctx.state_store.delete(str(self.ctx.repo_path), agent.id)
                except Exception:
                    logger.warning("Failed to drop stored record of %s", agent.name)

        self._unregister(agent.id)
        logger.info("Deleted agent %s (%d)", agent.name, agent.id)
        return agent

    async def rename_agent(self, key: int | str, new_name: str) -> Agent:
        """Rename an agent, moving its tree and branch. The session id carries over."""
        agent = self.get(key)
        name = sanitize_name(new_name)
        if name == agent.name:
            return agent

        new_path = self.worktree_path_for(name)
        new_branch = branch_name(name, self.ctx.config.branch_prefix)
        if any(a.name == name for a in self._agents.values()):
            raise NameCollisionError(f"An agent named {name!r} already exists")
        if new_path.exists():
            raise NameCollisionError(f"{new_path} already exists")
        if await self.ctx.git.branch_exists(new_branch):
            raise NameCollisionError(f"Branch {new_branch!r} already exists")

        async with self._lock(agent.id):
            session_before = agent.session_name
            # the tmux session itself keeps running under its session-id name
            agent.session_name = None
            had_backend = agent.handle is not None
            if had_backend:
                try:
                    await self.ctx.isolation.destroy(agent.id)
                except Exception:
                    logger.warning("Failed to destroy backend of %s before rename", agent.name)
                agent.handle = None

            old_name = agent.name
            try:
                await self.ctx.git.move_worktree(
                    agent.worktree_path, new_path, agent.branch, new_branch
                )
            except Exception:
                logger.warning("Rename of %s to %s failed; restoring it", old_name, name)
                agent.session_name = session_before
                if had_backend:
                    await self._start_backend(agent, [], degrade=False)
                raise
            agent.name = name
            agent.branch = new_branch
            agent.worktree_path = new_path

            self.ctx.coordination.install(new_path, self.ctx.repo_path)
            if had_backend:
                await self._start_backend(agent, [], degrade=False)
            await self._persist(agent)

        logger.info("Renamed agent %d: %s -> %s", agent.id, old_name, name)
        return agent

    async def change_tier(
        self, key: int | str, tier: IsolationTier, allow_fallback: bool = False
    ) -> Agent:
        agent = self.get(key)
        iso = self.ctx.config.isolation
        resolution = await self.ctx.isolation.registry.resolve_tier(
            tier, iso.minimum_tier, allow_fallback
        )
        async with self._lock(agent.id):
            await self.ctx.isolation.destroy(agent.id)
            agent.handle = None
            agent.isolation_tier = resolution.tier
            warnings: list[str] = []
            await self._start_backend(agent, warnings)
            await self._persist(agent)
        if warnings:
            raise OrchestraError(warnings[0])
        return agent

    # ── Sessions ─────────────────────────────────────────────────────────────

    def agent_command(self, agent: Agent) -> list[str]:
        """argv that starts (or resumes) the agent's coding session."""
        sid = agent.session_id
        resume = ["-r", sid] if agent.session_started else ["--session-id", sid]
        prefix = self.ctx.isolation.interactive_prefix(agent.id)
        return [*prefix, *shlex.split(self.ctx.config.agent_command), *resume]

    async def _launch(self, agent: Agent, name: str) -> None:
        if (
            agent.isolation_tier is not IsolationTier.NONE
            and not self.ctx.isolation.interactive_prefix(agent.id)
        ):
            agent.status = AgentStatus.ERROR
            raise BackendUnavailableError(
                f"{agent.name}: {agent.isolation_tier.value} backend cannot run the agent terminal"
            )
        await self.ctx.tmux.run_in_session(name, self.agent_command(agent))
        if not agent.session_started:
            agent.session_started = True
            await self._persist(agent)

    async def ensure_session(self, agent: Agent) -> str:
        """Make sure the agent's tmux session exists and runs the agent."""
        await self._ensure_backend(agent)
        name = self.session_name(agent)
        created = await self.ctx.tmux.ensure_session(name, agent.worktree_path)
        agent.session_name = name
        if created:
            await self._launch(agent, name)
            if agent.status in (AgentStatus.STOPPED, AgentStatus.ERROR):
                agent.status = AgentStatus.IDLE
        return name

    async def start_agent_command(self, key: int | str) -> None:
        """(Re)start the agent inside its session, e.g. after it exited to a shell."""
        agent = self.get(key)
        async with self._lock(agent.id):
            await self._ensure_backend(agent)
            name = self.session_name(agent)
            await self.ctx.tmux.ensure_session(name, agent.worktree_path)
            agent.session_name = name
            await self._launch(agent, name)

    async def focus_session(self, key: int | str) -> list[str]:
        """Return the argv a front end runs to attach to the agent's session."""
        agent = self.get(key)
        name = await self.ensure_session(agent)
        return self.ctx.tmux.attach_command(name, agent.worktree_path)

    async def send_input(self, key: int | str, text: str) -> None:
        agent = self.get(key)
        async with self._lock(agent.id):
            name = await self.ensure_session(agent)
            await self.ctx.tmux.send_keys(name, text)
            agent.pending_approval = None
            agent.status = AgentStatus.WORKING
            agent.last_interaction = time.time()

    async def exec_in_agent(self, key: int | str, command: str) -> str:
        agent = self.get(key)
        await self._ensure_backend(agent)
        if agent.handle is not None:
            return await self.ctx.isolation.exec(agent.id, command)
        adapter = self.ctx.isolation.registry.get(IsolationTier.NONE)
        if adapter is None:
            raise OrchestraError("No host execution backend registered")
        handle_id = await adapter.create(None, agent.worktree_path, agent.id, agent.session_id)
        try:
            return await adapter.exec(handle_id, command)
        finally:
            await adapter.destroy(handle_id)

    # ── Refresh passes ───────────────────────────────────────────────────────

    async def refresh_status(self) -> list[Agent]:
        """Reconcile session liveness and status files. Returns changed agents."""
        live = set(await self.ctx.tmux.list_sessions())
        changed = []
        for agent in self.agents():
            name = self.session_name(agent)
            before = (agent.status, agent.pending_approval)
            if name in live:
                agent.session_name = name
                if agent.status in (AgentStatus.STOPPED, AgentStatus.ERROR):
                    agent.status = AgentStatus.IDLE
            elif agent.session_name is not None:
                agent.session_name = None
                agent.status = AgentStatus.STOPPED
            self.ctx.status.apply(agent, self.ctx.status.check_status(agent.worktree_path))
            if (agent.status, agent.pending_approval) != before:
                changed.append(agent)
        return changed

    async def refresh_diff_stats(self) -> None:
        """Recompute diff stats for every agent, one git call per agent in parallel."""
        agents = self.agents()
        results = await asyncio.gather(
            *(self.ctx.git.diff_stats(a.worktree_path) for a in agents),
            return_exceptions=True,
        )
        for agent, stats in zip(agents, results):
            if isinstance(stats, BaseException):
                logger.debug("diff stats for %s failed: %s", agent.name, stats)
                continue
            agent.diff_stats = stats

    async def refresh_resource_stats(self) -> None:
        for agent in self.agents():
            if agent.handle is None:
                continue
            try:
                await self.ctx.isolation.stats(agent.id)
            except Exception:
                logger.debug("stats for %s failed", agent.name, exc_info=True)

    async def _poll(self, interval: float, fn) -> None:
        while True:
            try:
                await fn()
            except Exception:
                logger.warning("Periodic %s failed", fn.__name__, exc_info=True)
            await asyncio.sleep(interval)

    def start_polling(self) -> None:
        if self._poll_tasks:
            return
        cfg = self.ctx.config
        self._poll_tasks.append(
            asyncio.create_task(self._poll(cfg.status_poll_interval, self.refresh_status))
        )
        if cfg.diff_poll_interval > 0:
            self._poll_tasks.append(
                asyncio.create_task(self._poll(cfg.diff_poll_interval, self.refresh_diff_stats))
            )

    async def stop_polling(self) -> None:
        for task in self._poll_tasks:
            task.cancel()
        await asyncio.gather(*self._poll_tasks, return_exceptions=True)
        self._poll_tasks.clear()

    # ── Startup / shutdown ───────────────────────────────────────────────────

    async def restore_from_disk(self, reclaim_orphans: bool = True) -> dict[str, Any]:
        """Rebuild the agent set from working-tree metadata.

        The fallback store is consulted only for trees that exist without
        metadata; what it supplies is written back into the tree.
        """
        summary = {
            "restored": 0,
            "recovered_from_store": 0,
            "duplicates": 0,
            "backends_adopted": 0,
            "orphans_reclaimed": 0,
            "sessions_alive": 0,
            "backends_missing": 0,
        }
        for record in self.ctx.metadata.scan(self.ctx.repo_path):
            if record.id in self._agents:
                if self._agents[record.id].worktree_path != Path(record.worktree_path):
                    logger.warning(
                        "Agent id %d claimed by both %s and %s; ignoring the latter",
                        record.id, self._agents[record.id].worktree_path, record.worktree_path,
                    )
                    summary["duplicates"] += 1
                continue
            self._register(Agent.from_record(record))
            summary["restored"] += 1

        store = self.ctx.state_store
        if store is not None:
            for record in await store.list_for_repo(str(self.ctx.repo_path)):
                path = Path(record.worktree_path)
                if record.id in self._agents:
                    continue
                if not path.is_dir():
                    await store.delete(record.repo_path, record.id)
                    continue
                if self.ctx.metadata.load(path) is not None:
                    continue
                agent = Agent.from_record(record)
                self.ctx.metadata.save(agent)
                self._register(agent)
                summary["recovered_from_store"] += 1

        live_paths = {a.worktree_path: a for a in self._agents.values()}
        for handle in await self.ctx.isolation.discover():
            agent = live_paths.get(handle.worktree_path)
            if agent is None or agent.isolation_tier is IsolationTier.NONE or agent.handle:
                continue
            handle.tier = agent.isolation_tier
            handle.agent_id = agent.id
            self.ctx.isolation.adopt(handle)
            agent.handle = handle
            summary["backends_adopted"] += 1

        if reclaim_orphans:
            summary["orphans_reclaimed"] = await self.cleanup_orphans()

        live_sessions = set(await self.ctx.tmux.list_sessions())
        for agent in self._agents.values():
            name = self.session_name(agent)
            if name in live_sessions:
                agent.session_name = name
                summary["sessions_alive"] += 1
            else:
                agent.status = AgentStatus.STOPPED

        # Recreated on the next session start; never silently run on the host.
        for agent in self._agents.values():
            if agent.isolation_tier is not IsolationTier.NONE and agent.handle is None:
                logger.warning(
                    "Agent %s lost its %s backend", agent.name, agent.isolation_tier.value
                )
                agent.status = AgentStatus.ERROR
                summary["backends_missing"] += 1

        logger.info("Restored agents from %s: %s", self.ctx.repo_path, summary)
        return summary

    async def cleanup_orphans(self) -> int:
        """Destroy backends under this repo's worktree root that no agent owns."""
        root = self.ctx.config.worktree_root(self.ctx.repo_path)
        live = {a.worktree_path for a in self._agents.values()}
        return await self.ctx.isolation.cleanup_orphans(live, scope=root)

    async def cleanup_all(self, kill_sessions: bool = False) -> None:
        """Destroy every backend (and optionally every session) of live agents."""
        await self.ctx.isolation.destroy_all()
        for agent in self._agents.values():
            agent.handle = None
            if kill_sessions:
                try:
                    await self.ctx.tmux.kill_session(self.session_name(agent))
                except Exception:
                    logger.warning("Failed to kill session of %s", agent.name)
                agent.session_name = None

    async def dispose(self, destroy_backends: bool = False) -> None:
        await self.stop_polling()
        if destroy_backends:
            await self.cleanup_all()
        self._agents.clear()
        self._order.clear()
        self._locks.clear()
        await self.ctx.dispose()
