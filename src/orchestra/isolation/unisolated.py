"""No isolation: agents run directly on the host in their working tree."""

from __future__ import annotations

import re
from pathlib import Path

from orchestra import proc
from orchestra.isolation.base import DisplayInfo, IsolationAdapter
from orchestra.models import IsolationTier


class UnisolatedAdapter(IsolationAdapter):
    def __init__(self, timeout: float = 60) -> None:
        super().__init__(IsolationTier.NONE)
        self._timeout = timeout
        self._worktrees: dict[str, Path] = {}

    async def is_available(self) -> bool:
        return True

    def get_display_info(self, definition_ref: str | None = None) -> DisplayInfo:
        return DisplayInfo(
            name="unisolated",
            tier=self.tier,
            description="Runs on the host with the operator's permissions",
        )

    async def create(
        self,
        definition_ref: str | None,
        worktree_path: Path,
        agent_id: int,
        session_id: str | None = None,
    ) -> str:
        handle_id = f"unisolated-{agent_id}-{re.sub(r'[^A-Za-z0-9]', '_', str(worktree_path))}"
        self._worktrees[handle_id] = Path(worktree_path)
        return handle_id

    async def exec(self, handle_id: str, command: str) -> str:
        return await proc.run_checked(
            "sh", "-c", command, cwd=self._worktrees.get(handle_id), timeout=self._timeout
        )

    async def destroy(self, handle_id: str) -> None:
        self._worktrees.pop(handle_id, None)
