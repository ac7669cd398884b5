"""Hardened docker containers.

Every container runs with all capabilities dropped, no-new-privileges, a
read-only root filesystem with tmpfs scratch space, no network unless the
definition asks for one, explicit memory/cpu/pid limits and a non-root
user. The agent's working tree is bind-mounted at ``/workspace``.

Containers carry labels naming the owning agent and working tree, so they
can be correlated with worktree metadata (and reclaimed when none matches)
without any database.
"""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
from pathlib import Path

from orchestra import proc
from orchestra.errors import CommandError, DefinitionError
from orchestra.isolation.base import DisplayInfo, IsolationAdapter
from orchestra.isolation.definitions import DefinitionLoader
from orchestra.models import (
    BackendHandle,
    HandleState,
    IsolationTier,
    ResourceStats,
)

logger = logging.getLogger(__name__)

LABEL_MANAGED = "orchestra.managed"
LABEL_AGENT = "orchestra.agent-id"
LABEL_WORKTREE = "orchestra.worktree-path"
WORKSPACE = "/workspace"
HOME = "/home/agent"

_MEM = re.compile(r"([\d.]+)\s*([KMGT]i?B|B)", re.I)
_MB_PER_UNIT = {
    "b": 1 / (1024 * 1024),
    "kib": 1 / 1024, "kb": 1 / 1024,
    "mib": 1, "mb": 1,
    "gib": 1024, "gb": 1024,
    "tib": 1024 * 1024, "tb": 1024 * 1024,
}


def parse_memory_mb(text: str) -> float:
    """``"512MiB"`` -> 512.0, ``"1.5GiB"`` -> 1536.0."""
    m = _MEM.search(text)
    if not m:
        return 0.0
    return float(m.group(1)) * _MB_PER_UNIT[m.group(2).lower()]


def parse_stats(line: str) -> ResourceStats | None:
    """Parse ``docker stats --format "{{.MemUsage}},{{.CPUPerc}}"`` output.

    ``"512MiB / 4GiB,3.20%"`` -> memory_mb=512, cpu_percent=3.2.
    """
    usage, sep, cpu = line.strip().partition(",")
    if not sep:
        return None
    try:
        cpu_percent = float(cpu.strip().rstrip("%") or 0)
    except ValueError:
        return None
    return ResourceStats(
        memory_mb=round(parse_memory_mb(usage.split("/")[0]), 2),
        cpu_percent=cpu_percent,
    )


class ContainerAdapter(IsolationAdapter):
    """docker-backed isolation; with ``runtime="runsc"`` it serves gVisor."""

    def __init__(
        self,
        loader: DefinitionLoader,
        tier: IsolationTier = IsolationTier.CONTAINER,
        runtime: str | None = None,
        docker: str = "docker",
        timeout: float = 120,
    ) -> None:
        super().__init__(tier)
        self._loader = loader
        self.runtime = runtime
        self._docker = docker
        self._timeout = timeout

    async def _run(self, *args: str) -> tuple[int, str, str]:
        return await proc.run(self._docker, *args, timeout=self._timeout)

    # ── Capability / presentation ────────────────────────────────────────

    async def is_available(self) -> bool:
        if shutil.which(self._docker) is None:
            return False
        try:
            if self.runtime is None:
                rc, _, _ = await self._run("info")
                return rc == 0
            rc, out, _ = await self._run("info", "--format", "{{json .Runtimes}}")
            return rc == 0 and f'"{self.runtime}"' in out
        except Exception:
            logger.debug("docker availability check failed", exc_info=True)
            return False

    def get_display_info(self, definition_ref: str | None = None) -> DisplayInfo:
        try:
            definition = self._loader.container(definition_ref)
        except DefinitionError as exc:
            return DisplayInfo(
                name=definition_ref or "default", tier=self.tier, description=str(exc)
            )
        runtime = self.runtime or definition.runtime
        return DisplayInfo(
            name=definition.name,
            tier=self.tier,
            description=f"Container ({runtime or 'runc'}), network {definition.network}",
            memory=definition.memory,
            cpus=definition.cpus,
            source=definition.image,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────

    @staticmethod
    def container_name(agent_id: int, worktree_path: Path) -> str:
        digest = hashlib.sha1(str(worktree_path).encode()).hexdigest()[:8]
        return f"orchestra-agent-{agent_id}-{digest}"

    def build_run_args(
        self,
        definition_ref: str | None,
        worktree_path: Path,
        agent_id: int,
        session_id: str | None = None,
    ) -> list[str]:
        """``docker run`` arguments (without the binary) for an agent container."""
        d = self._loader.container(definition_ref)
        runtime = self.runtime or d.runtime
        args = [
            "run", "-d",
            "--name", self.container_name(agent_id, worktree_path),
            "--label", f"{LABEL_MANAGED}=true",
            "--label", f"{LABEL_AGENT}={agent_id}",
            "--label", f"{LABEL_WORKTREE}={worktree_path}",
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "--read-only",
            "--tmpfs", f"/tmp:rw,noexec,nosuid,size={d.tmp_size}",
            "--tmpfs", f"{HOME}:rw,noexec,nosuid,size={d.home_size}",
            "--network", d.network,
            "--memory", d.memory,
            "--cpus", d.cpus,
            "--pids-limit", str(d.pids),
            "--user", d.user,
            "-v", f"{worktree_path}:{WORKSPACE}:rw",
            "-w", WORKSPACE,
        ]
        if runtime:
            args += ["--runtime", runtime]
        for mount in d.mounts:
            args += ["-v", f"{mount.resolve_source(worktree_path)}:{mount.target}:{mount.mode}"]

        env = {"HOME": HOME, "CLAUDE_PROJECT_DIR": WORKSPACE, **d.environment}
        if session_id:
            env["ORCHESTRA_SESSION_ID"] = session_id
        for key, value in env.items():
            args += ["-e", f"{key}={value}"]

        if d.entrypoint:
            args += ["--entrypoint", d.entrypoint[0], d.image, *d.entrypoint[1:]]
        else:
            args += [d.image, "sleep", "infinity"]
        return args

    async def create(
        self,
        definition_ref: str | None,
        worktree_path: Path,
        agent_id: int,
        session_id: str | None = None,
    ) -> str:
        args = self.build_run_args(definition_ref, worktree_path, agent_id, session_id)
        name = self.container_name(agent_id, worktree_path)
        rc, out, err = await self._run(*args)
        if rc != 0:
            # docker may have created the container before failing to start it
            await self._run("rm", "-f", name)
            raise CommandError([self._docker, *args], rc, err)
        container_id = out.strip().splitlines()[-1] if out.strip() else name
        logger.info("Started container %s for agent %d (%s)", container_id[:12], agent_id, name)
        return container_id

    async def exec(self, handle_id: str, command: str) -> str:
        return await proc.run_checked(
            self._docker, "exec", handle_id, "sh", "-c", command, timeout=self._timeout
        )

    async def destroy(self, handle_id: str) -> None:
        try:
            rc, _, err = await self._run("rm", "-f", handle_id)
        except Exception:
            logger.warning("Failed to remove container %s", handle_id, exc_info=True)
            return
        if rc != 0 and "no such container" not in err.lower():
            logger.warning("docker rm -f %s failed: %s", handle_id, err.strip())

    async def get_stats(self, handle_id: str) -> ResourceStats | None:
        rc, out, _ = await self._run(
            "stats", handle_id, "--no-stream", "--format", "{{.MemUsage}},{{.CPUPerc}}"
        )
        if rc != 0:
            return None
        return parse_stats(out)

    def interactive_prefix(self, handle_id: str) -> list[str]:
        return [self._docker, "exec", "-it", "-w", WORKSPACE, handle_id]

    async def list_managed(self) -> list[BackendHandle]:
        fmt = (
            '{{.ID}}\t{{.Label "' + LABEL_AGENT + '"}}\t'
            '{{.Label "' + LABEL_WORKTREE + '"}}\t{{.State}}'
        )
        try:
            rc, out, _ = await self._run(
                "ps", "-a", "--filter", f"label={LABEL_MANAGED}=true", "--format", fmt
            )
        except Exception:
            logger.debug("docker ps failed", exc_info=True)
            return []
        if rc != 0:
            return []

        handles = []
        for line in out.splitlines():
            parts = line.split("\t")
            if len(parts) != 4 or not parts[1].isdigit():
                continue
            container_id, agent_id, worktree, state = parts
            handles.append(
                BackendHandle(
                    handle_id=container_id,
                    tier=self.tier,
                    agent_id=int(agent_id),
                    worktree_path=Path(worktree),
                    state=HandleState.RUNNING if state == "running" else HandleState.STOPPED,
                )
            )
        return handles
