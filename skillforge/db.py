import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional, Tuple

import aiosqlite

from .errors import BackendUnavailable, ProvisionError


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


@asynccontextmanager
async def connect(path: str) -> AsyncIterator[aiosqlite.Connection]:
    """Open one backend round trip; driver failures surface as BackendUnavailable."""
    try:
        async with aiosqlite.connect(path) as db:
            db.row_factory = aiosqlite.Row
            yield db
    except sqlite3.Error as exc:
        raise BackendUnavailable(f"{type(exc).__name__}: {exc}") from exc


SCHEMA = """
CREATE TABLE IF NOT EXISTS plans(
    plan_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    estimated_time TEXT,
    tags_json TEXT,
    skill TEXT,
    steps_json TEXT,
    notes TEXT,
    revision INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);
CREATE TABLE IF NOT EXISTS user_plans(
    user_id TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    progress INTEGER DEFAULT 0,
    completed_steps INTEGER DEFAULT 0,
    total_steps INTEGER DEFAULT 0,
    last_progress_update TEXT,
    created_at TEXT,
    updated_at TEXT,
    PRIMARY KEY (user_id, plan_id)
);
CREATE INDEX IF NOT EXISTS idx_user_plans_user ON user_plans(user_id);
CREATE TABLE IF NOT EXISTS user_activity(
    activity_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    action TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    plan_id TEXT,
    details_json TEXT
);
CREATE INDEX IF NOT EXISTS idx_user_activity_user_time
    ON user_activity(user_id, timestamp, activity_id);
CREATE INDEX IF NOT EXISTS idx_user_activity_user_action_time
    ON user_activity(user_id, action, timestamp, activity_id);
CREATE TABLE IF NOT EXISTS user_preferences(
    user_id TEXT PRIMARY KEY,
    learning_style TEXT,
    pace_preference TEXT,
    difficulty_preference TEXT,
    interests_json TEXT,
    created_at TEXT,
    updated_at TEXT
);
"""
SCHEMA_STATEMENTS = [s.strip() for s in SCHEMA.split(";") if s.strip()]

# Columns added after a table's first release; backfilled on older databases.
LATE_COLUMNS = [
    ("plans", "skill", "TEXT"),
    ("plans", "revision", "INTEGER DEFAULT 0"),
    ("user_activity", "plan_id", "TEXT"),
]

TABLES = ("plans", "user_plans", "user_activity", "user_preferences")
INDEXES = (
    "idx_user_plans_user",
    "idx_user_activity_user_time",
    "idx_user_activity_user_action_time",
)


def _already_exists(exc: sqlite3.Error) -> bool:
    text = str(exc).lower()
    return "already exists" in text or "duplicate column" in text


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        """Create missing tables, indexes and columns. Safe to run concurrently."""
        try:
            async with aiosqlite.connect(self.path) as db:
                await db.execute("PRAGMA journal_mode=WAL")
                for statement in SCHEMA_STATEMENTS:
                    try:
                        await db.execute(statement)
                    except sqlite3.OperationalError as exc:
                        # A concurrent creator won the race; later columns still need checking.
                        if not _already_exists(exc):
                            raise

                async def column_exists(table: str, column: str) -> bool:
                    cursor = await db.execute(f"PRAGMA table_info({table})")
                    rows = await cursor.fetchall()
                    await cursor.close()
                    return any(row[1] == column for row in rows)

                async def ensure_column(table: str, column: str, decl: str) -> None:
                    if await column_exists(table, column):
                        return
                    try:
                        await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
                    except sqlite3.OperationalError as exc:
                        # Another process added it between the check and the ALTER.
                        if not _already_exists(exc):
                            raise

                for table, column, decl in LATE_COLUMNS:
                    await ensure_column(table, column, decl)
                await db.commit()
        except sqlite3.Error as exc:
            raise ProvisionError(f"Schema provisioning failed: {exc}") from exc

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with connect(self.path) as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def list_tables(self) -> List[str]:
        rows = await self.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
        return [row["name"] for row in rows]

    async def list_indexes(self) -> List[str]:
        rows = await self.fetchall("SELECT name FROM sqlite_master WHERE type='index'")
        return [row["name"] for row in rows]
