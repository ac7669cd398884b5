"""Per-worktree agent metadata.

Every agent working tree carries ``.orchestra/agent.json``. That file is
the only authority for an agent's existence and identity: the in-memory
agent set is rebuilt from it on startup, and a sandbox without a matching
file is garbage.

Unreadable files (missing, empty, truncated, not an object, failing
validation) load as ``None`` so a damaged tree never blocks a rebuild.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from orchestra.config import METADATA_DIRNAME
from orchestra.models import Agent, PersistedAgentRecord
from orchestra.names import is_agent_dir_name

logger = logging.getLogger(__name__)

AGENT_FILENAME = "agent.json"


def metadata_path(worktree: Path) -> Path:
    return worktree / METADATA_DIRNAME / AGENT_FILENAME


class WorktreeMetadataStore:
    """Reads and writes agent records inside working trees."""

    def __init__(self, worktree_directory: str = ".worktrees", branch_prefix: str = "agent") -> None:
        self._worktree_directory = worktree_directory
        self._branch_prefix = branch_prefix

    def save(self, agent: Agent | PersistedAgentRecord) -> Path:
        """Write the agent's durable fields into its working tree.

        The write is atomic (temp file + rename). Keys already present in the
        file that this version does not know about are preserved.
        """
        record = agent.to_record() if isinstance(agent, Agent) else agent
        path = metadata_path(Path(record.worktree_path))
        path.parent.mkdir(parents=True, exist_ok=True)

        data = _read_object(path) or {}
        data.update(record.to_json_dict())

        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".agent-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("Saved metadata for agent %s to %s", record.name, path)
        return path

    def load(self, worktree: Path) -> PersistedAgentRecord | None:
        data = _read_object(metadata_path(worktree))
        if data is None:
            return None
        try:
            return PersistedAgentRecord.model_validate(data)
        except ValidationError as exc:
            logger.warning("Ignoring invalid agent metadata in %s: %s", worktree, exc)
            return None

    def scan(self, repo_path: Path) -> list[PersistedAgentRecord]:
        """Load every agent record under the repo's worktree directory.

        Records whose stored ``worktreePath`` disagrees with where the file
        was found are corrected in memory; the filesystem location wins.
        """
        root = Path(repo_path) / self._worktree_directory
        if not root.is_dir():
            return []

        records: list[PersistedAgentRecord] = []
        for entry in sorted(root.iterdir()):
            if not entry.is_dir() or not is_agent_dir_name(entry.name, self._branch_prefix):
                continue
            record = self.load(entry)
            if record is None:
                continue
            if Path(record.worktree_path) != entry:
                logger.info(
                    "Agent %s metadata points at %s but lives in %s; using the latter",
                    record.name, record.worktree_path, entry,
                )
                record = record.model_copy(update={"worktree_path": str(entry)})
            records.append(record)
        return records


def _read_object(path: Path) -> dict | None:
    try:
        text = path.read_text()
    except (FileNotFoundError, NotADirectoryError):
        return None
    except OSError as exc:
        logger.warning("Cannot read %s: %s", path, exc)
        return None
    if not text.strip():
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Corrupt agent metadata: %s", path)
        return None
    return data if isinstance(data, dict) else None
