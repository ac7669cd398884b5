"""tmux session management.

Session names derive from an agent's permanent session id, never from its
display name, so a rename leaves a running session addressable.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from orchestra import proc
from orchestra.errors import CommandError
from orchestra.models import Agent
from orchestra.paths import shell_join

logger = logging.getLogger(__name__)


class TmuxSessionService:
    def __init__(self, prefix: str = "opus", timeout: float = 10) -> None:
        self.prefix = prefix
        self._timeout = timeout

    def session_name(self, agent: Agent | str) -> str:
        """``<prefix>-<first 12 hex chars of the session id>``."""
        session_id = agent.session_id if isinstance(agent, Agent) else agent
        return f"{self.prefix}-{session_id.replace('-', '')[:12]}"

    @staticmethod
    def available() -> bool:
        return shutil.which("tmux") is not None

    async def _tmux(self, *args: str) -> tuple[int, str, str]:
        try:
            return await proc.run("tmux", *args, timeout=self._timeout)
        except FileNotFoundError:
            return 127, "", "tmux not found"

    async def session_exists(self, name: str) -> bool:
        rc, _, _ = await self._tmux("has-session", "-t", f"={name}")
        return rc == 0

    async def kill_session(self, name: str) -> None:
        """Kill a session by name; an absent session is not an error."""
        rc, _, err = await self._tmux("kill-session", "-t", f"={name}")
        if rc != 0:
            logger.debug("kill-session %s: %s", name, err.strip() or f"exit {rc}")

    async def list_sessions(self) -> list[str]:
        """Names of live sessions that carry this service's prefix."""
        rc, out, _ = await self._tmux("list-sessions", "-F", "#{session_name}")
        if rc != 0:
            # No server running means no sessions.
            return []
        return [
            line.strip()
            for line in out.splitlines()
            if line.strip().startswith(f"{self.prefix}-")
        ]

    async def ensure_session(
        self, name: str, cwd: Path, command: list[str] | None = None
    ) -> bool:
        """Create a detached session unless one exists. Returns True if created.

        With *command* the session runs it instead of a shell and ends with it.
        """
        if await self.session_exists(name):
            return False
        rc, _, err = await self._tmux(
            "new-session", "-d", "-s", name, "-c", str(cwd), *(command or [])
        )
        if rc != 0:
            raise CommandError(["tmux", "new-session", "-d", "-s", name], rc, err)
        logger.info("Created tmux session %s in %s", name, cwd)
        return True

    def attach_command(self, name: str, cwd: Path) -> list[str]:
        """argv that attaches to *name*, creating it first if needed."""
        return ["tmux", "new-session", "-A", "-s", name, "-c", str(cwd)]

    async def send_keys(self, name: str, text: str, enter: bool = True) -> None:
        rc, _, err = await self._tmux("send-keys", "-t", f"={name}:", "-l", text)
        if rc != 0:
            raise CommandError(["tmux", "send-keys", "-t", name], rc, err)
        if enter:
            await self._tmux("send-keys", "-t", f"={name}:", "Enter")

    async def run_in_session(self, name: str, argv: list[str]) -> None:
        await self.send_keys(name, shell_join(argv))

    async def pane_pid(self, name: str) -> int | None:
        """pid of the process running in the session's first pane."""
        rc, out, _ = await self._tmux("list-panes", "-t", f"={name}", "-F", "#{pane_pid}")
        if rc != 0:
            return None
        try:
            return int(out.split()[0])
        except (IndexError, ValueError):
            return None
