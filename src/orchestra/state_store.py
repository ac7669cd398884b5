"""Host-side fallback store for agent records.

A SQLite copy of every record saved to a working tree. It is consulted
only when a tree exists but its metadata file does not (for instance after
someone deleted ``.orchestra/`` by hand); the recovered record is then
written back into the tree, which is authoritative from then on.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite
from pydantic import ValidationError

from orchestra.models import PersistedAgentRecord

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    repo_path TEXT NOT NULL,
    agent_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    worktree_path TEXT NOT NULL,
    record TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (repo_path, agent_id)
);

CREATE INDEX IF NOT EXISTS idx_agents_repo ON agents(repo_path);
"""


class AgentStateStore:
    """SQLite-backed fallback agent store with async access."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.debug("Agent state store initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("State store not initialized, call initialize() first")
        return self._db

    # ── CRUD ─────────────────────────────────────────────────────────────

    async def save(self, record: PersistedAgentRecord) -> None:
        """Insert or replace the record for (repo, id)."""
        await self.db.execute(
            """INSERT OR REPLACE INTO agents
               (repo_path, agent_id, name, worktree_path, record, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                record.repo_path,
                record.id,
                record.name,
                record.worktree_path,
                json.dumps(record.to_json_dict()),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        await self.db.commit()

    async def get(self, repo_path: str, agent_id: int) -> PersistedAgentRecord | None:
        cursor = await self.db.execute(
            "SELECT * FROM agents WHERE repo_path = ? AND agent_id = ?",
            (repo_path, agent_id),
        )
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def list_for_repo(self, repo_path: str) -> list[PersistedAgentRecord]:
        cursor = await self.db.execute(
            "SELECT * FROM agents WHERE repo_path = ? ORDER BY agent_id", (repo_path,)
        )
        rows = await cursor.fetchall()
        records = [self._row_to_record(row) for row in rows]
        return [r for r in records if r is not None]

    async def delete(self, repo_path: str, agent_id: int) -> None:
        await self.db.execute(
            "DELETE FROM agents WHERE repo_path = ? AND agent_id = ?", (repo_path, agent_id)
        )
        await self.db.commit()
        logger.debug("Deleted stored record %s#%d", repo_path, agent_id)

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> PersistedAgentRecord | None:
        try:
            return PersistedAgentRecord.model_validate(json.loads(row["record"]))
        except (ValueError, ValidationError):
            logger.warning("Skipping unreadable stored record for agent %s", row["agent_id"])
            return None
