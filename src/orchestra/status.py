"""Agent status signals.

Hook scripts inside each working tree write one file per session under
``.orchestra/status/``: either the raw JSON hook payload (permission
requests) or a bare word (``working``, ``waiting``, ``stopped``). The
newest file wins.

A signal is discarded when its file is older than the agent's last local
interaction. Without that, an approval request written just before the
operator approved it would flip the agent straight back to
waiting-for-approval on the next poll.
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path

from orchestra.config import METADATA_DIRNAME
from orchestra.models import Agent, AgentStatus, ParsedStatus

logger = logging.getLogger(__name__)

_LEGACY = {
    "working": AgentStatus.WORKING,
    "waiting": AgentStatus.WAITING_INPUT,
    "stopped": AgentStatus.STOPPED,
}


def status_dir(worktree: Path) -> Path:
    return worktree / METADATA_DIRNAME / "status"


def _tool_context(data: dict) -> str:
    tool = data.get("tool_name")
    tool_input = data.get("tool_input")
    if not isinstance(tool_input, dict):
        return ""
    if tool == "Bash" and tool_input.get("command"):
        return str(tool_input["command"])
    if tool in ("Write", "Edit") and tool_input.get("file_path"):
        return str(tool_input["file_path"])
    return ""


def parse_status(content: str) -> ParsedStatus | None:
    """Parse one status file's content; None if it means nothing to us."""
    content = content.strip()
    if content.startswith("{"):
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            if data.get("tool_name"):
                context = _tool_context(data)
                tool = str(data["tool_name"])
                return ParsedStatus(
                    status=AgentStatus.WAITING_APPROVAL,
                    pending_approval=f"{tool}: {context}" if context else tool,
                )
            if data.get("session_id"):
                return ParsedStatus(status=AgentStatus.WORKING)
            return None

    status = _LEGACY.get(content.lower())
    return ParsedStatus(status=status) if status else None


class StatusPoller:
    """Reads status files and applies them to agents."""

    def check_status(self, worktree: Path) -> ParsedStatus | None:
        directory = status_dir(worktree)
        latest: Path | None = None
        latest_mtime = 0.0
        try:
            entries = list(directory.iterdir())
        except OSError:
            return None
        for entry in entries:
            try:
                mtime = entry.stat().st_mtime
            except OSError:
                continue
            if entry.is_file() and mtime > latest_mtime:
                latest, latest_mtime = entry, mtime
        if latest is None:
            return None

        try:
            parsed = parse_status(latest.read_text())
        except OSError as exc:
            logger.debug("Cannot read status file %s: %s", latest, exc)
            return None
        if parsed is not None:
            parsed.file_timestamp = latest_mtime
        return parsed

    def clear_status(self, worktree: Path) -> None:
        directory = status_dir(worktree)
        if directory.is_dir():
            shutil.rmtree(directory, ignore_errors=True)
        directory.mkdir(parents=True, exist_ok=True)

    def apply(self, agent: Agent, parsed: ParsedStatus | None) -> bool:
        """Apply a parsed status to *agent*. Returns True if anything changed."""
        if parsed is None:
            return False
        if parsed.file_timestamp is not None and parsed.file_timestamp < agent.last_interaction:
            logger.debug(
                "Discarding stale status %s for %s", parsed.status.value, agent.name
            )
            return False
        if agent.status == parsed.status and agent.pending_approval == parsed.pending_approval:
            return False
        agent.status = parsed.status
        agent.pending_approval = parsed.pending_approval
        return True

    def poll(self, agents: list[Agent]) -> list[Agent]:
        """One pass over *agents*; returns those whose status changed."""
        return [a for a in agents if self.apply(a, self.check_status(a.worktree_path))]
