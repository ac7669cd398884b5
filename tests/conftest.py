"""Shared fixtures: an isolated HOME, real git repositories and a fake backend."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from orchestra.isolation.base import DisplayInfo, IsolationAdapter
from orchestra.models import BackendHandle, IsolationTier, ResourceStats


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep ~/.orchestra and ORCHESTRA_* settings of the machine out of tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for var in (
        "ORCHESTRA_WORKTREE_DIR",
        "ORCHESTRA_SESSION_PREFIX",
        "ORCHESTRA_STATE_DB",
        "ORCHESTRA_DIFF_POLL_INTERVAL",
    ):
        monkeypatch.delenv(var, raising=False)
    return home


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )
    return result.stdout


@pytest.fixture
def git():
    """Run a git command synchronously in a directory (test setup only)."""
    return _git


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A repository on ``main`` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo, "config", "user.email", "test@example.com")
    _git(repo, "config", "user.name", "Test")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# test\n")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


class FakeAdapter(IsolationAdapter):
    """In-memory backend recording what it was asked to do."""

    def __init__(self, tier: IsolationTier, available: bool = True, fail_create: bool = False):
        super().__init__(tier)
        self.available = available
        self.fail_create = fail_create
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.managed: list[BackendHandle] = []

    async def is_available(self) -> bool:
        return self.available

    def get_display_info(self, definition_ref: str | None = None) -> DisplayInfo:
        return DisplayInfo(name="fake", tier=self.tier, description="fake backend")

    async def create(self, definition_ref, worktree_path, agent_id, session_id=None) -> str:
        if self.fail_create:
            raise RuntimeError("backend exploded")
        handle_id = f"{self.tier.value}-{agent_id}-{len(self.created)}"
        self.created.append(handle_id)
        self.managed.append(
            BackendHandle(
                handle_id=handle_id,
                tier=self.tier,
                agent_id=agent_id,
                worktree_path=Path(worktree_path),
            )
        )
        return handle_id

    async def exec(self, handle_id: str, command: str) -> str:
        return f"{handle_id}: {command}"

    async def destroy(self, handle_id: str) -> None:
        self.destroyed.append(handle_id)
        self.managed = [h for h in self.managed if h.handle_id != handle_id]

    async def get_stats(self, handle_id: str) -> ResourceStats | None:
        return ResourceStats(memory_mb=128, cpu_percent=1.5)

    def interactive_prefix(self, handle_id: str) -> list[str]:
        return ["fake-exec", handle_id]

    async def list_managed(self) -> list[BackendHandle]:
        return list(self.managed)


@pytest.fixture
def fake_adapter():
    """The FakeAdapter class, for tests that build their own registries."""
    return FakeAdapter
