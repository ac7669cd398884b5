"""cloud-hypervisor microVMs.

Each VM gets a runtime directory holding its API socket, its vsock socket,
one virtiofsd socket per shared directory (the working tree is always
shared as tag ``workspace``) and a ``vm.json`` state file. virtiofsd
daemons are started and their sockets awaited before the VM is launched.

cloud-hypervisor itself runs in a detached tmux session ``ch-<handle>``
with its serial port on the session's tty, so the pane pid is the VM pid
and an agent terminal reaches the guest by attaching to that session
(see ``orchestra.isolation.console``). Nothing ties a VM to the process
that started it: ``vm.json`` lets a later process find it, report it and
tear it down.

Commands reach the guest over vsock: the host side of a cloud-hypervisor
vsock device is a unix socket that accepts ``CONNECT <port>`` and then
carries a plain byte stream. The guest agent on that port reads one JSON
request line and answers with a JSON object before closing.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import os
import shutil
import signal
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from orchestra.errors import (
    DefinitionError,
    HandleNotFoundError,
    MissingKernelError,
    MissingRootfsError,
    OrchestraError,
)
from orchestra.isolation.base import DisplayInfo, IsolationAdapter
from orchestra.isolation.definitions import DefinitionLoader, MicroVMDefinition
from orchestra.models import (
    BackendHandle,
    IsolationTier,
    ResourceStats,
)
from orchestra.paths import expand, shell_join
from orchestra.tmux import TmuxSessionService

logger = logging.getLogger(__name__)

GUEST_WORKSPACE = "/workspace"
FIRST_GUEST_CID = 3  # 0-2 are reserved
RUNTIME_DIR_PREFIX = "cloud-hypervisor-"
STATE_FILE = "vm.json"
CONSOLE_PREFIX = "ch"
VIRTIOFSD_LOCATIONS = (
    "/usr/libexec/virtiofsd",
    "/usr/lib/qemu/virtiofsd",
    "/usr/local/bin/virtiofsd",
)


@dataclass
class _RunningVM:
    handle_id: str
    agent_id: int
    worktree_path: Path
    runtime_dir: Path
    cid: int
    environment: dict[str, str]
    pid: int | None = None
    virtiofsd_pids: list[int] = field(default_factory=list)
    cpu_sample: tuple[int, float] | None = None

    @property
    def api_socket(self) -> Path:
        return self.runtime_dir / "api.sock"

    @property
    def vsock_socket(self) -> Path:
        return self.runtime_dir / "vsock.sock"

    @property
    def state_file(self) -> Path:
        return self.runtime_dir / STATE_FILE

    @property
    def console_session(self) -> str:
        return f"{CONSOLE_PREFIX}-{self.handle_id}"

    def save(self) -> None:
        state = {
            "managedBy": "orchestra",
            "handleId": self.handle_id,
            "agentId": self.agent_id,
            "worktreePath": str(self.worktree_path),
            "cid": self.cid,
            "pid": self.pid,
            "virtiofsdPids": self.virtiofsd_pids,
            "environment": self.environment,
        }
        tmp = self.state_file.with_suffix(".tmp")
        tmp.write_text(json.dumps(state, indent=2))
        os.replace(tmp, self.state_file)

    @classmethod
    def load(cls, runtime_dir: Path) -> _RunningVM | None:
        """Read ``vm.json`` from *runtime_dir*; None if absent or not ours."""
        try:
            state = json.loads((runtime_dir / STATE_FILE).read_text())
            if state.get("managedBy") != "orchestra":
                return None
            return cls(
                handle_id=state["handleId"],
                agent_id=int(state["agentId"]),
                worktree_path=Path(state["worktreePath"]),
                runtime_dir=runtime_dir,
                cid=int(state["cid"]),
                environment=dict(state.get("environment") or {}),
                pid=state.get("pid"),
                virtiofsd_pids=list(state.get("virtiofsdPids") or []),
            )
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.debug("Ignoring unreadable VM state in %s: %s", runtime_dir, exc)
            return None


def find_virtiofsd() -> str | None:
    for location in VIRTIOFSD_LOCATIONS:
        if os.access(location, os.X_OK):
            return location
    return shutil.which("virtiofsd")


def read_proc_stat(pid: int) -> tuple[int, int]:
    """Return (rss_pages, utime+stime ticks) from ``/proc/<pid>/stat``."""
    with open(f"/proc/{pid}/stat") as f:
        line = f.read()
    # comm (field 2) may contain spaces; everything after the last ")" is
    # fields 3.. separated by single spaces.
    rest = line[line.rfind(")") + 2:].split()
    utime, stime, rss = int(rest[11]), int(rest[12]), int(rest[21])
    return rss, utime + stime


def pid_belongs_to(pid: int, runtime_dir: Path) -> bool:
    """True if *pid* is alive and its command line mentions *runtime_dir*.

    Every process a VM owns is started with a path inside its runtime
    directory, so a recycled pid or a zombie (empty cmdline) never matches.
    """
    try:
        with open(f"/proc/{pid}/cmdline", "rb") as f:
            return os.fsencode(str(runtime_dir)) in f.read()
    except OSError:
        return False


async def _terminate(pid: int, runtime_dir: Path, timeout: float = 5) -> None:
    if not pid_belongs_to(pid, runtime_dir):
        return
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_belongs_to(pid, runtime_dir):
            return
        await asyncio.sleep(0.1)
    logger.warning("pid %d ignored SIGTERM, killing", pid)
    with contextlib.suppress(ProcessLookupError):
        os.kill(pid, signal.SIGKILL)


class MicroVMAdapter(IsolationAdapter):
    def __init__(
        self,
        loader: DefinitionLoader,
        binary: str = "cloud-hypervisor",
        virtiofsd: str | None = None,
        runtime_root: Path | None = None,
        guest_port: int = 5000,
        socket_timeout: float = 10,
        exec_timeout: float = 60,
    ) -> None:
        super().__init__(IsolationTier.MICROVM)
        self._loader = loader
        self._binary = binary
        self._virtiofsd = virtiofsd
        self._runtime_root = runtime_root or Path(tempfile.gettempdir())
        self._guest_port = guest_port
        self._socket_timeout = socket_timeout
        self._exec_timeout = exec_timeout
        self._tmux = TmuxSessionService(CONSOLE_PREFIX)
        self._running: dict[str, _RunningVM] = {}
        self._next_cid = FIRST_GUEST_CID

    # ── Capability / presentation ────────────────────────────────────────

    async def is_available(self) -> bool:
        try:
            return (
                shutil.which(self._binary) is not None
                and TmuxSessionService.available()
                and os.access("/dev/kvm", os.R_OK | os.W_OK)
            )
        except Exception:
            return False

    def get_display_info(self, definition_ref: str | None = None) -> DisplayInfo:
        try:
            d = self._loader.microvm(definition_ref)
        except DefinitionError as exc:
            return DisplayInfo(
                name=definition_ref or "default", tier=self.tier, description=str(exc)
            )
        return DisplayInfo(
            name=d.name,
            tier=self.tier,
            description=f"cloud-hypervisor microVM, {len(d.mounts)} extra mount(s)",
            memory=f"{d.memory_mb}m",
            cpus=str(d.vcpus),
            source=d.kernel_path,
        )

    def interactive_prefix(self, handle_id: str) -> list[str]:
        """Type the command on the VM's serial console, then attach to it."""
        vm = self._running.get(handle_id)
        if vm is None:
            return []
        prefix = [
            sys.executable, "-m", "orchestra.isolation.console",
            "--session", vm.console_session,
            "--cwd", GUEST_WORKSPACE,
        ]
        for key, value in vm.environment.items():
            prefix += ["--env", f"{key}={value}"]
        return [*prefix, "--"]

    # ── Lifecycle ────────────────────────────────────────────────────────

    @staticmethod
    def handle_id_for(agent_id: int, worktree_path: Path) -> str:
        digest = hashlib.sha1(str(worktree_path).encode()).hexdigest()[:8]
        return f"vm-{agent_id}-{digest}"

    def _allocate_cid(self) -> int:
        cid = self._next_cid
        self._next_cid += 1
        return cid

    async def create(
        self,
        definition_ref: str | None,
        worktree_path: Path,
        agent_id: int,
        session_id: str | None = None,
    ) -> str:
        definition = self._loader.microvm(definition_ref)
        kernel = expand(definition.kernel_path)
        rootfs = expand(definition.rootfs_path)
        if not kernel.is_file():
            raise MissingKernelError(f"MicroVM kernel image not found: {kernel}")
        if not rootfs.is_file():
            raise MissingRootfsError(f"MicroVM root filesystem not found: {rootfs}")

        handle_id = self.handle_id_for(agent_id, worktree_path)
        await self._rediscover()
        if handle_id in self._running:
            return handle_id
        runtime_dir = self._runtime_root / f"{RUNTIME_DIR_PREFIX}{handle_id}"
        if (runtime_dir / STATE_FILE).exists():
            raise OrchestraError(f"MicroVM {handle_id} is being started by another process")

        environment = dict(definition.environment)
        if session_id:
            environment["ORCHESTRA_SESSION_ID"] = session_id
        vm = _RunningVM(
            handle_id=handle_id,
            agent_id=agent_id,
            worktree_path=Path(worktree_path),
            runtime_dir=runtime_dir,
            cid=self._allocate_cid(),
            environment=environment,
        )
        self._running[handle_id] = vm
        try:
            await self._launch(vm, definition, kernel, rootfs)
        except BaseException:
            self._running.pop(handle_id, None)
            await self._teardown(vm)
            raise
        logger.info(
            "Started microVM %s for agent %d (cid %d, pid %s)", handle_id, agent_id, vm.cid, vm.pid
        )
        return handle_id

    async def _launch(
        self, vm: _RunningVM, d: MicroVMDefinition, kernel: Path, rootfs: Path
    ) -> None:
        vm.runtime_dir.mkdir(parents=True, exist_ok=True)

        shares = [("workspace", vm.worktree_path, False)]
        for mount in d.mounts:
            host = (
                vm.worktree_path / mount.host_path[2:]
                if mount.host_path.startswith("./")
                else expand(mount.host_path)
            )
            shares.append((mount.tag, host, mount.read_only))

        virtiofsd = self._virtiofsd or find_virtiofsd()
        if virtiofsd is None:
            raise OrchestraError("virtiofsd not found; cannot share directories with the VM")
        vm.save()

        fs_args: list[str] = []
        for tag, host, read_only in shares:
            socket = vm.runtime_dir / f"virtiofs-{tag}.sock"
            args = [
                virtiofsd,
                f"--socket-path={socket}",
                f"--shared-dir={host}",
                "--sandbox=none",
            ]
            if read_only:
                args.append("--readonly")
            vm.virtiofsd_pids.append(await _spawn(*args))
            vm.save()
            await _wait_for_socket(socket, self._socket_timeout)
            fs_args += ["--fs", f"tag={tag},socket={socket},num_queues=1,queue_size=512"]

        argv: list[str | Path] = [
            self._binary,
            "--api-socket", vm.api_socket,
            "--kernel", kernel,
            "--cmdline", "console=ttyS0 root=/dev/vda rw",
            "--cpus", f"boot={d.vcpus}",
            "--memory", f"size={d.memory_mb}M,shared=on",
            "--disk", f"path={rootfs}",
            "--serial", "tty",
            "--console", "off",
            "--vsock", f"cid={vm.cid},socket={vm.vsock_socket}",
            *fs_args,
        ]
        script = vm.runtime_dir / "start.sh"
        script.write_text(f"#!/bin/sh\nexec {shell_join(argv)}\n")
        script.chmod(0o755)

        await self._tmux.ensure_session(vm.console_session, vm.runtime_dir, [shell_join([script])])
        vm.pid = await self._tmux.pane_pid(vm.console_session)
        if vm.pid is None:
            raise OrchestraError(f"Console session {vm.console_session} did not start")
        vm.save()
        try:
            await _wait_for_socket(vm.api_socket, self._socket_timeout)
        except TimeoutError:
            if not pid_belongs_to(vm.pid, vm.runtime_dir):
                raise OrchestraError(f"cloud-hypervisor exited during boot of {vm.handle_id}") from None
            raise

    async def _find(self, handle_id: str) -> _RunningVM | None:
        if handle_id not in self._running:
            await self._rediscover()
        return self._running.get(handle_id)

    async def exec(self, handle_id: str, command: str) -> str:
        vm = await self._find(handle_id)
        if vm is None:
            raise HandleNotFoundError(f"MicroVM not found: {handle_id}")

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(vm.vsock_socket)), self._socket_timeout
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise OrchestraError(f"vsock connection to {handle_id} failed: {exc}") from exc

        try:
            writer.write(f"CONNECT {self._guest_port}\n".encode())
            await writer.drain()
            ack = await asyncio.wait_for(reader.readline(), self._socket_timeout)
            if not ack.startswith(b"OK"):
                raise OrchestraError(f"Guest agent on {handle_id} refused connection: {ack!r}")

            request = {"type": "exec", "command": command, "env": vm.environment}
            writer.write(json.dumps(request).encode() + b"\n")
            await writer.drain()
            data = await asyncio.wait_for(reader.read(), self._exec_timeout)
        except asyncio.TimeoutError:
            raise OrchestraError(f"Command timed out in {handle_id}") from None
        finally:
            writer.close()

        text = data.decode(errors="replace")
        try:
            response = json.loads(text)
        except json.JSONDecodeError:
            return text
        if not isinstance(response, dict):
            return text
        if response.get("error"):
            raise OrchestraError(f"Guest command failed in {handle_id}: {response['error']}")
        return str(response.get("output") or "")

    async def destroy(self, handle_id: str) -> None:
        vm = await self._find(handle_id)
        if vm is None:
            logger.debug("MicroVM %s not running, nothing to destroy", handle_id)
            return
        del self._running[handle_id]
        try:
            await self._api_shutdown(vm.api_socket)
        except Exception as exc:
            logger.debug("Graceful shutdown of %s failed: %s", handle_id, exc)
        await self._teardown(vm)
        logger.info("Destroyed microVM %s", handle_id)

    async def _api_shutdown(self, api_socket: Path) -> None:
        transport = httpx.AsyncHTTPTransport(uds=str(api_socket))
        async with httpx.AsyncClient(transport=transport, timeout=5) as client:
            resp = await client.put("http://localhost/api/v1/vm.shutdown")
            resp.raise_for_status()

    async def _teardown(self, vm: _RunningVM) -> None:
        """Stop every process the VM owns and remove its runtime directory."""
        await self._tmux.kill_session(vm.console_session)
        for pid in [p for p in (vm.pid, *vm.virtiofsd_pids) if p is not None]:
            try:
                await _terminate(pid, vm.runtime_dir)
            except OSError:
                logger.warning("Failed to stop pid %d of microVM %s", pid, vm.handle_id, exc_info=True)
        shutil.rmtree(vm.runtime_dir, ignore_errors=True)

    async def _rediscover(self) -> None:
        """Pick up VMs started by other processes from their ``vm.json``.

        A VM whose process is gone has its leftovers torn down. One with no
        pid yet is left alone while its state file is fresh, since another
        process may still be booting it.
        """
        for state_file in sorted(self._runtime_root.glob(f"{RUNTIME_DIR_PREFIX}vm-*/{STATE_FILE}")):
            vm = _RunningVM.load(state_file.parent)
            if vm is None or vm.handle_id in self._running:
                continue
            self._next_cid = max(self._next_cid, vm.cid + 1)
            if vm.pid is None:
                try:
                    age = time.time() - state_file.stat().st_mtime
                except OSError:
                    continue
                if age < self._socket_timeout * 3:
                    continue
            elif pid_belongs_to(vm.pid, vm.runtime_dir):
                self._running[vm.handle_id] = vm
                logger.info("Rediscovered microVM %s (pid %d)", vm.handle_id, vm.pid)
                continue
            logger.info("Reclaiming leftovers of stopped microVM %s", vm.handle_id)
            await self._teardown(vm)

    async def get_stats(self, handle_id: str) -> ResourceStats | None:
        """Host-side accounting of the VM process; the guest reports nothing."""
        vm = await self._find(handle_id)
        if vm is None or vm.pid is None or not pid_belongs_to(vm.pid, vm.runtime_dir):
            return None
        try:
            rss_pages, ticks = read_proc_stat(vm.pid)
        except (OSError, IndexError, ValueError):
            return None

        now = time.monotonic()
        cpu_percent = 0.0
        if vm.cpu_sample is not None:
            prev_ticks, prev_time = vm.cpu_sample
            elapsed = now - prev_time
            if elapsed > 0:
                cpu_percent = round(
                    (ticks - prev_ticks) / os.sysconf("SC_CLK_TCK") / elapsed * 100, 2
                )
        vm.cpu_sample = (ticks, now)

        page_size = os.sysconf("SC_PAGE_SIZE")
        return ResourceStats(
            memory_mb=round(rss_pages * page_size / (1024 * 1024), 2),
            cpu_percent=cpu_percent,
        )

    async def list_managed(self) -> list[BackendHandle]:
        await self._rediscover()
        return [
            BackendHandle(
                handle_id=vm.handle_id,
                tier=self.tier,
                agent_id=vm.agent_id,
                worktree_path=vm.worktree_path,
                pid=vm.pid,
            )
            for vm in self._running.values()
        ]


async def _spawn(*args: str) -> int:
    """Start a daemon detached from our session and return its pid."""
    logger.debug("spawn: %s", " ".join(args))
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        start_new_session=True,
    )
    return process.pid


async def _wait_for_socket(path: Path, timeout: float) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists():
            return
        await asyncio.sleep(0.1)
    raise TimeoutError(f"Socket not available after {timeout}s: {path}")
