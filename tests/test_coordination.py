"""Tests for coordination files copied into agent worktrees."""

import json
import os
from pathlib import Path

import pytest

from orchestra.coordination import CoordinationInstaller


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path


class TestInstall:
    def test_installs_bundled_files(self, repo: Path, tmp_path: Path):
        wt = tmp_path / "wt"
        CoordinationInstaller().install(wt, repo)

        hooks = wt / ".orchestra" / "hooks"
        names = {p.name for p in hooks.iterdir()}
        assert names == {"on-permission.sh", "on-prompt.sh", "on-stop.sh", "on-session-end.sh"}
        assert all(os.access(p, os.X_OK) for p in hooks.iterdir())
        assert (wt / ".orchestra" / "AGENT.md").read_text().startswith("# Agent working tree")
        assert (wt / ".orchestra" / "status").is_dir()

    def test_hook_wiring_points_at_project_hooks(self, repo: Path, tmp_path: Path):
        wt = tmp_path / "wt"
        CoordinationInstaller().install(wt, repo)

        settings = json.loads((wt / ".claude" / "settings.local.json").read_text())
        commands = [
            hook["command"]
            for entries in settings["hooks"].values()
            for entry in entries
            for hook in entry["hooks"]
        ]
        assert set(settings["hooks"]) == {"PermissionRequest", "UserPromptSubmit", "Stop", "SessionEnd"}
        assert all(c.startswith('"$CLAUDE_PROJECT_DIR"/.orchestra/hooks/') for c in commands)

    def test_repo_overrides(self, repo: Path, tmp_path: Path):
        overrides = repo / ".orchestra" / "templates"
        (overrides / "hooks").mkdir(parents=True)
        (overrides / "AGENT.md").write_text("custom instructions\n")
        (overrides / "hooks" / "on-extra.sh").write_text("#!/bin/sh\n")

        wt = tmp_path / "wt"
        CoordinationInstaller().install(wt, repo)

        assert (wt / ".orchestra" / "AGENT.md").read_text() == "custom instructions\n"
        assert (wt / ".orchestra" / "hooks" / "on-extra.sh").exists()
        assert (wt / ".orchestra" / "hooks" / "on-stop.sh").exists()

    def test_custom_templates_dir(self, repo: Path, tmp_path: Path):
        templates = tmp_path / "templates"
        (templates / "hooks").mkdir(parents=True)
        (templates / "hooks" / "only.sh").write_text("#!/bin/sh\n")
        (templates / "AGENT.md").write_text("team\n")
        (templates / "settings.json").write_text("{}\n")

        wt = tmp_path / "wt"
        CoordinationInstaller(templates).install(wt, repo)
        assert [p.name for p in (wt / ".orchestra" / "hooks").iterdir()] == ["only.sh"]

    def test_reinstall_overwrites(self, repo: Path, tmp_path: Path):
        wt = tmp_path / "wt"
        installer = CoordinationInstaller()
        installer.install(wt, repo)
        (wt / ".orchestra" / "AGENT.md").write_text("edited")
        installer.install(wt, repo)
        assert (wt / ".orchestra" / "AGENT.md").read_text() != "edited"


class TestGitignore:
    def test_adds_entries_once(self, repo: Path):
        installer = CoordinationInstaller()
        assert installer.ensure_gitignore(repo, ".worktrees") is True
        assert installer.ensure_gitignore(repo, ".worktrees") is False

        lines = (repo / ".gitignore").read_text().splitlines()
        assert ".worktrees/" in lines
        assert ".orchestra/agent.json" in lines
        assert ".claude/settings.local.json" in lines
        assert ".orchestra/" not in lines

    def test_preserves_existing_content(self, repo: Path):
        (repo / ".gitignore").write_text("node_modules")
        CoordinationInstaller().ensure_gitignore(repo, ".worktrees")
        text = (repo / ".gitignore").read_text()
        assert text.startswith("node_modules\n")
        assert text.endswith("\n")

    def test_only_missing_entries_added(self, repo: Path):
        (repo / ".gitignore").write_text(".worktrees/\n")
        CoordinationInstaller().ensure_gitignore(repo, ".worktrees")
        lines = (repo / ".gitignore").read_text().splitlines()
        assert lines.count(".worktrees/") == 1
