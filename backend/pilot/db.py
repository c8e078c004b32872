from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS agent_runs (
    session_id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'idle',
    events TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL
);
"""


class EventStore:
    """Keeps the verbatim event list of each session for replay."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    async def _connect(self) -> aiosqlite.Connection:
        db = await aiosqlite.connect(self.db_path)
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA journal_mode=WAL")
        return db

    async def init(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(_CREATE_TABLES)
            await db.commit()

    async def save(self, session_id: str, events: list[dict], status: str = "idle") -> None:
        db = await self._connect()
        try:
            await db.execute(
                """INSERT OR REPLACE INTO agent_runs (session_id, status, events, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (
                    session_id,
                    status,
                    json.dumps(events, ensure_ascii=False),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            await db.commit()
        finally:
            await db.close()

    async def load(self, session_id: str) -> list[dict] | None:
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT events FROM agent_runs WHERE session_id = ?",
                (session_id,),
            )
            row = await cursor.fetchone()
        finally:
            await db.close()
        if row is None:
            return None
        return json.loads(row["events"])

    async def list_sessions(self) -> list[dict]:
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT session_id, status, updated_at FROM agent_runs ORDER BY updated_at DESC"
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return [dict(row) for row in rows]
