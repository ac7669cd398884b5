"""Git worktree operations for agent working trees."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path

from orchestra import proc
from orchestra.errors import CommandError
from orchestra.models import DiffStats

logger = logging.getLogger(__name__)

_SHORTSTAT = {
    "files_changed": re.compile(r"(\d+) files? changed"),
    "insertions": re.compile(r"(\d+) insertions?\(\+\)"),
    "deletions": re.compile(r"(\d+) deletions?\(-\)"),
}


def parse_shortstat(text: str) -> DiffStats:
    """Parse ``git diff --shortstat`` output; empty output means no changes."""
    values = {}
    for field, pattern in _SHORTSTAT.items():
        m = pattern.search(text)
        values[field] = int(m.group(1)) if m else 0
    return DiffStats(**values)


class GitWorktrees:
    """Worktree and branch management for one repository."""

    def __init__(self, repo_path: Path, timeout: float = 60) -> None:
        self.repo_path = Path(repo_path)
        self._timeout = timeout
        # worktree add/remove and ref updates must not overlap
        self._lock = asyncio.Lock()

    async def _git(self, *args: str, cwd: Path | None = None) -> str:
        return await proc.run_checked(
            "git", *args, cwd=cwd or self.repo_path, timeout=self._timeout
        )

    async def is_repository(self) -> bool:
        try:
            out = await self._git("rev-parse", "--is-inside-work-tree")
        except (CommandError, OSError):
            return False
        return out.strip() == "true"

    async def current_branch(self, worktree: Path | None = None) -> str:
        """Branch checked out in *worktree* or the main tree (``HEAD`` when detached)."""
        return (await self._git("rev-parse", "--abbrev-ref", "HEAD", cwd=worktree)).strip()

    async def branch_exists(self, branch: str) -> bool:
        rc, _, _ = await proc.run(
            "git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}",
            cwd=self.repo_path, timeout=self._timeout,
        )
        return rc == 0

    async def create_worktree(self, path: Path, branch: str, base: str | None = None) -> None:
        """Check out *branch* at *path*, creating the branch from *base* if needed."""
        path.parent.mkdir(parents=True, exist_ok=True)
        async with self._lock:
            if await self.branch_exists(branch):
                await self._git("worktree", "add", str(path), branch)
            else:
                base = base or await self.current_branch()
                await self._git("worktree", "add", "-b", branch, str(path), base)
        logger.info("Created worktree: %s -> %s", branch, path)

    async def remove_worktree(self, path: Path) -> None:
        """Remove a worktree, even with local modifications, then prune."""
        async with self._lock:
            try:
                await self._git("worktree", "remove", "--force", str(path))
            finally:
                if path.exists():
                    shutil.rmtree(path, ignore_errors=True)
                await self._git("worktree", "prune")
        logger.info("Removed worktree %s", path)

    async def delete_branch(self, branch: str) -> None:
        async with self._lock:
            await self._git("branch", "-D", branch)

    async def move_worktree(
        self, old_path: Path, new_path: Path, old_branch: str, new_branch: str
    ) -> None:
        """Relocate a worktree and rename its branch, keeping local changes.

        If the branch cannot be renamed the tree is moved back before the
        error propagates.
        """
        new_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._lock:
            await self._git("worktree", "move", str(old_path), str(new_path))
            if old_branch != new_branch:
                try:
                    await self._git("branch", "-m", old_branch, new_branch)
                except Exception:
                    await self._git("worktree", "move", str(new_path), str(old_path))
                    raise
        logger.info("Moved worktree %s (%s) -> %s (%s)", old_path, old_branch, new_path, new_branch)

    async def base_branch(self, worktree: Path) -> str:
        """Pick what an agent branch is compared against: main, master, else HEAD~1."""
        for candidate in ("main", "master"):
            rc, _, _ = await proc.run(
                "git", "rev-parse", "--verify", "--quiet", candidate,
                cwd=worktree, timeout=self._timeout,
            )
            if rc == 0:
                return candidate
        return "HEAD~1"

    async def diff_stats(self, worktree: Path) -> DiffStats:
        base = await self.base_branch(worktree)
        out = await self._git("diff", "--shortstat", f"{base}...HEAD", cwd=worktree)
        return parse_shortstat(out)
