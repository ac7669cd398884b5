"""Coordination files copied into every agent working tree.

The bundled templates live in ``orchestra/templates``. A repository can
override any single file by placing it at the same relative path under
``<repo>/.orchestra/templates/``.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from orchestra.config import METADATA_DIRNAME

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"

# Entries appended to the repository's .gitignore; the worktree directory
# line is added separately since it is configurable.
GITIGNORE_ENTRIES = (
    f"{METADATA_DIRNAME}/agent.json",
    f"{METADATA_DIRNAME}/status/",
    f"{METADATA_DIRNAME}/hooks/",
    f"{METADATA_DIRNAME}/AGENT.md",
    ".claude/settings.local.json",
)


class CoordinationInstaller:
    """Copies hook scripts, agent instructions and hook wiring into worktrees."""

    def __init__(self, templates_dir: Path | None = None) -> None:
        self._templates_dir = templates_dir or TEMPLATES_DIR

    def _source(self, repo_path: Path, relative: str) -> Path:
        override = repo_path / METADATA_DIRNAME / "templates" / relative
        return override if override.is_file() else self._templates_dir / relative

    def _hook_names(self, repo_path: Path) -> list[str]:
        names = {p.name for p in (self._templates_dir / "hooks").glob("*.sh")}
        override_dir = repo_path / METADATA_DIRNAME / "templates" / "hooks"
        if override_dir.is_dir():
            names.update(p.name for p in override_dir.glob("*.sh"))
        return sorted(names)

    def install(self, worktree: Path, repo_path: Path) -> None:
        meta_dir = worktree / METADATA_DIRNAME
        hooks_dir = meta_dir / "hooks"
        hooks_dir.mkdir(parents=True, exist_ok=True)
        (meta_dir / "status").mkdir(exist_ok=True)

        for name in self._hook_names(repo_path):
            dest = hooks_dir / name
            shutil.copyfile(self._source(repo_path, f"hooks/{name}"), dest)
            dest.chmod(0o755)

        shutil.copyfile(self._source(repo_path, "AGENT.md"), meta_dir / "AGENT.md")

        claude_dir = worktree / ".claude"
        claude_dir.mkdir(exist_ok=True)
        shutil.copyfile(
            self._source(repo_path, "settings.json"), claude_dir / "settings.local.json"
        )
        logger.debug("Installed coordination files into %s", worktree)

    def ensure_gitignore(self, repo_path: Path, worktree_directory: str) -> bool:
        """Make sure orchestrator files never get committed.

        Returns True if .gitignore was modified.
        """
        gitignore = repo_path / ".gitignore"
        existing = gitignore.read_text() if gitignore.exists() else ""
        present = {line.strip() for line in existing.splitlines()}

        wanted = [f"{worktree_directory.strip('/')}/", *GITIGNORE_ENTRIES]
        missing = [entry for entry in wanted if entry not in present]
        if not missing:
            return False

        block = "\n# agent orchestrator\n" + "\n".join(missing) + "\n"
        if existing and not existing.endswith("\n"):
            block = "\n" + block
        with open(gitignore, "a") as f:
            f.write(block)
        logger.info("Added %d entries to %s", len(missing), gitignore)
        return True
