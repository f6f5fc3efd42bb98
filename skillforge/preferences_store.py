import json
from typing import Any, Mapping, Optional, Union

import aiosqlite
import pydantic

from .db import connect, json_loads, utc_now
from .errors import ValidationError
from .schemas import PreferencesUpdate, UserPreferences

PREFERENCE_COLUMNS = (
    "user_id, learning_style, pace_preference, difficulty_preference, interests_json, created_at, updated_at"
)


class PreferencesStore:
    """Learning preferences handed to the plan generator, one record per user."""

    def __init__(self, path: str):
        self.path = path

    def _row_to_preferences(self, row: aiosqlite.Row) -> UserPreferences:
        return UserPreferences(
            user_id=row["user_id"],
            learning_style=row["learning_style"] or "visual",
            pace_preference=row["pace_preference"] or "moderate",
            difficulty_preference=row["difficulty_preference"] or "challenging",
            interests=json_loads(row["interests_json"], []),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def get(self, user_id: str) -> Optional[UserPreferences]:
        async with connect(self.path) as db:
            cursor = await db.execute(
                f"SELECT {PREFERENCE_COLUMNS} FROM user_preferences WHERE user_id=?",
                (user_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_preferences(row) if row else None

    async def get_or_default(self, user_id: str) -> UserPreferences:
        prefs = await self.get(user_id)
        if prefs is not None:
            return prefs
        now = utc_now()
        return UserPreferences(user_id=user_id, created_at=now, updated_at=now)

    async def update(
        self, user_id: str, partial: Union[PreferencesUpdate, Mapping[str, Any]]
    ) -> UserPreferences:
        """Read-modify-write; creates the record with defaults when missing."""
        if not isinstance(partial, PreferencesUpdate):
            try:
                partial = PreferencesUpdate.model_validate(partial)
            except pydantic.ValidationError as exc:
                raise ValidationError(f"Invalid preferences: {exc}") from exc
        current = await self.get_or_default(user_id)
        changes = {k: v for k, v in partial.model_dump(exclude_unset=True).items() if v is not None}
        merged = current.model_copy(update={**changes, "updated_at": utc_now()})
        async with connect(self.path) as db:
            await db.execute(
                f"INSERT OR REPLACE INTO user_preferences({PREFERENCE_COLUMNS}) VALUES (?,?,?,?,?,?,?)",
                (
                    merged.user_id,
                    merged.learning_style,
                    merged.pace_preference,
                    merged.difficulty_preference,
                    json.dumps(merged.interests, ensure_ascii=True),
                    merged.created_at,
                    merged.updated_at,
                ),
            )
            await db.commit()
        return merged
