import json
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import aiosqlite
import pydantic

from .db import connect, json_loads, utc_now
from .errors import ConflictError, PlanNotFound, ValidationError
from .schemas import Plan, PlanContent, PlanUpdate, Step

PLAN_COLUMNS = (
    "plan_id, title, description, estimated_time, tags_json, skill, steps_json, notes, "
    "revision, created_at, updated_at"
)
NULLABLE_FIELDS = {"estimated_time_to_complete", "skill"}


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _check_unique_step_ids(steps: Iterable[Step]) -> None:
    seen = set()
    for step in steps:
        if step.id in seen:
            raise ValidationError(f"Duplicate step id {step.id!r}")
        seen.add(step.id)


def _check_steps_unchanged(current: List[Step], steps: List[Step]) -> None:
    # Step ids, order and text are fixed at creation; only `completed` moves.
    if [s.id for s in steps] != [s.id for s in current]:
        raise ValidationError("Step ids and order cannot change after creation")
    for old, new in zip(current, steps):
        if (old.title, old.description) != (new.title, new.description):
            raise ValidationError(f"Step {new.id} content cannot change after creation")


def new_plan_id() -> str:
    return f"plan_{uuid.uuid4().hex}"


class PlanStore:
    """Canonical plan records. Every write replaces the whole row."""

    def __init__(self, path: str):
        self.path = path

    def _row_to_plan(self, row: aiosqlite.Row) -> Plan:
        return Plan(
            plan_id=row["plan_id"],
            title=row["title"] or "",
            description=row["description"] or "",
            estimated_time_to_complete=row["estimated_time"],
            tags=json_loads(row["tags_json"], []),
            skill=row["skill"],
            steps=[Step.model_validate(s) for s in json_loads(row["steps_json"], [])],
            notes=row["notes"] or "",
            revision=int(row["revision"] or 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _plan_params(self, plan: Plan) -> tuple:
        return (
            plan.title,
            plan.description,
            plan.estimated_time_to_complete,
            _json_dumps(plan.tags),
            plan.skill,
            _json_dumps([step.model_dump() for step in plan.steps]),
            plan.notes,
            plan.revision,
            plan.created_at,
            plan.updated_at,
        )

    async def create(self, content: Union[PlanContent, Mapping[str, Any]]) -> Plan:
        if not isinstance(content, PlanContent):
            try:
                content = PlanContent.model_validate(content)
            except pydantic.ValidationError as exc:
                raise ValidationError(f"Invalid plan content: {exc}") from exc
        steps = [
            Step(
                id=item.id if item.id is not None else str(index + 1),
                title=item.title,
                description=item.description,
                completed=item.completed,
            )
            for index, item in enumerate(content.steps)
        ]
        _check_unique_step_ids(steps)
        created_at = utc_now()
        plan = Plan(
            plan_id=new_plan_id(),
            title=content.title,
            description=content.description,
            estimated_time_to_complete=content.estimated_time_to_complete,
            tags=list(content.tags),
            skill=content.skill,
            steps=steps,
            notes=content.notes,
            revision=0,
            created_at=created_at,
            updated_at=created_at,
        )
        async with connect(self.path) as db:
            await db.execute(
                f"INSERT INTO plans({PLAN_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                (plan.plan_id, *self._plan_params(plan)),
            )
            await db.commit()
        return plan

    async def get(self, plan_id: str) -> Optional[Plan]:
        async with connect(self.path) as db:
            cursor = await db.execute(f"SELECT {PLAN_COLUMNS} FROM plans WHERE plan_id=?", (plan_id,))
            row = await cursor.fetchone()
            await cursor.close()
        if not row:
            return None
        return self._row_to_plan(row)

    async def get_or_raise(self, plan_id: str) -> Plan:
        plan = await self.get(plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)
        return plan

    async def get_many(self, plan_ids: Iterable[str]) -> Dict[str, Plan]:
        ids = list(dict.fromkeys(plan_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        async with connect(self.path) as db:
            cursor = await db.execute(
                f"SELECT {PLAN_COLUMNS} FROM plans WHERE plan_id IN ({placeholders})",
                tuple(ids),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return {row["plan_id"]: self._row_to_plan(row) for row in rows}

    async def update(
        self,
        plan_id: str,
        partial: Union[PlanUpdate, Mapping[str, Any]],
        expected_revision: Optional[int] = None,
    ) -> Plan:
        """Merge ``partial`` into the stored plan and write it back whole.

        With ``expected_revision`` the write only lands if nobody else wrote the
        plan since that revision was read; otherwise ``ConflictError`` is raised
        and the caller decides whether to re-read and retry.

        Steps may only change their ``completed`` flags.
        """
        if not isinstance(partial, PlanUpdate):
            try:
                partial = PlanUpdate.model_validate(partial)
            except pydantic.ValidationError as exc:
                raise ValidationError(f"Invalid plan update: {exc}") from exc
        current = await self.get_or_raise(plan_id)
        if expected_revision is not None and current.revision != expected_revision:
            raise ConflictError(
                f"Plan {plan_id} is at revision {current.revision}, expected {expected_revision}"
            )
        changes = partial.model_dump(exclude_unset=True)
        if changes.get("steps") is not None:
            steps = [Step.model_validate(s) for s in changes["steps"]]
            _check_steps_unchanged(current.steps, steps)
            changes["steps"] = steps
        updates = {k: v for k, v in changes.items() if v is not None or k in NULLABLE_FIELDS}
        updates["revision"] = current.revision + 1
        updates["updated_at"] = utc_now()
        merged = current.model_copy(update=updates)
        sql = (
            "UPDATE plans SET title=?, description=?, estimated_time=?, tags_json=?, skill=?, steps_json=?, "
            "notes=?, revision=?, created_at=?, updated_at=? WHERE plan_id=?"
        )
        params: List[Any] = [*self._plan_params(merged), plan_id]
        if expected_revision is not None:
            sql += " AND revision=?"
            params.append(expected_revision)
        async with connect(self.path) as db:
            cursor = await db.execute(sql, tuple(params))
            written = cursor.rowcount
            await cursor.close()
            await db.commit()
        if written == 0:
            if await self.get(plan_id) is None:
                raise PlanNotFound(plan_id)
            raise ConflictError(f"Plan {plan_id} changed while it was being written")
        return merged

    async def delete(self, plan_id: str) -> None:
        async with connect(self.path) as db:
            await db.execute("DELETE FROM plans WHERE plan_id=?", (plan_id,))
            await db.commit()
