import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import aiosqlite

from .db import connect, json_loads, utc_now
from .errors import SkillForgeError, ValidationError
from .schemas import ACTIVITY_ACTIONS, ActivityEvent

logger = logging.getLogger("uvicorn.error")

EVENT_COLUMNS = "activity_id, user_id, action, timestamp, plan_id, details_json"

_last_id_ns = 0


def new_activity_id() -> str:
    """Ids sort in generation order within a process, even inside one clock tick."""
    global _last_id_ns
    now_ns = time.time_ns()
    if now_ns <= _last_id_ns:
        now_ns = _last_id_ns + 1
    _last_id_ns = now_ns
    return f"activity_{now_ns:019d}_{uuid.uuid4().hex[:8]}"


class ActivityLog:
    """Append-only, per-user audit trail of plan state changes."""

    def __init__(self, path: str, default_limit: int = 100, max_limit: int = 500):
        self.path = path
        self.default_limit = default_limit
        self.max_limit = max_limit

    def _clamp(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.default_limit
        return max(1, min(int(limit), self.max_limit))

    def _row_to_event(self, row: aiosqlite.Row) -> ActivityEvent:
        return ActivityEvent(
            activity_id=row["activity_id"],
            user_id=row["user_id"],
            action=row["action"],
            timestamp=row["timestamp"],
            plan_id=row["plan_id"],
            details=json_loads(row["details_json"], {}),
        )

    async def record(
        self,
        user_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        timestamp: Optional[str] = None,
    ) -> ActivityEvent:
        if action not in ACTIVITY_ACTIONS:
            raise ValidationError(f"Unknown activity action {action!r}")
        details = dict(details or {})
        event = ActivityEvent(
            activity_id=new_activity_id(),
            user_id=user_id,
            action=action,
            timestamp=timestamp or utc_now(),
            plan_id=details.get("plan_id"),
            details=details,
        )
        async with connect(self.path) as db:
            # Plain INSERT: a colliding id fails instead of replacing history.
            await db.execute(
                f"INSERT INTO user_activity({EVENT_COLUMNS}) VALUES (?,?,?,?,?,?)",
                (
                    event.activity_id,
                    event.user_id,
                    event.action,
                    event.timestamp,
                    event.plan_id,
                    json.dumps(event.details, ensure_ascii=True),
                ),
            )
            await db.commit()
        return event

    async def try_record(
        self,
        user_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        timestamp: Optional[str] = None,
    ) -> Optional[ActivityEvent]:
        """Best-effort record: a failed audit write never undoes the change it describes."""
        try:
            return await self.record(user_id, action, details, timestamp=timestamp)
        except SkillForgeError as exc:
            logger.warning("Activity %s for user %s not recorded: %s", action, user_id, exc)
            return None

    async def _query(self, where: str, params: tuple, limit: Optional[int]) -> List[ActivityEvent]:
        async with connect(self.path) as db:
            cursor = await db.execute(
                f"SELECT {EVENT_COLUMNS} FROM user_activity WHERE {where} "
                "ORDER BY timestamp DESC, activity_id DESC LIMIT ?",
                (*params, self._clamp(limit)),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_event(row) for row in rows]

    async def list_by_user(self, user_id: str, limit: Optional[int] = None) -> List[ActivityEvent]:
        return await self._query("user_id=?", (user_id,), limit)

    async def list_by_user_and_action(
        self, user_id: str, action: str, limit: Optional[int] = None
    ) -> List[ActivityEvent]:
        if action not in ACTIVITY_ACTIONS:
            raise ValidationError(f"Unknown activity action {action!r}")
        return await self._query("user_id=? AND action=?", (user_id, action), limit)

    async def list_progress_history(
        self, user_id: str, plan_id: str, limit: Optional[int] = None
    ) -> List[ActivityEvent]:
        return await self._query(
            "user_id=? AND action='PROGRESS_UPDATE' AND plan_id=?",
            (user_id, plan_id),
            limit,
        )

    async def prune_before(self, cutoff: str) -> int:
        """Drop events older than ``cutoff``; the retention policy's only delete path."""
        async with connect(self.path) as db:
            cursor = await db.execute("DELETE FROM user_activity WHERE timestamp < ?", (cutoff,))
            removed = cursor.rowcount
            await cursor.close()
            await db.commit()
        return removed
