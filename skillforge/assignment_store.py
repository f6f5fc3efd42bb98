import logging
from typing import List, Optional

import aiosqlite

from .activity_log import ActivityLog
from .db import connect, utc_now
from .errors import AssignmentNotFound, PlanNotFound, ValidationError
from .plan_store import PlanStore
from .schemas import UserPlan, UserPlanWithPlan, steps_for_progress

logger = logging.getLogger("uvicorn.error")

USER_PLAN_COLUMNS = (
    "user_id, plan_id, progress, completed_steps, total_steps, last_progress_update, created_at, updated_at"
)


class AssignmentStore:
    """Per-(user, plan) progress summaries, denormalized from the plan's steps."""

    def __init__(self, path: str, plans: PlanStore, activity: ActivityLog):
        self.path = path
        self.plans = plans
        self.activity = activity

    def _row_to_user_plan(self, row: aiosqlite.Row) -> UserPlan:
        return UserPlan(
            user_id=row["user_id"],
            plan_id=row["plan_id"],
            progress=int(row["progress"] or 0),
            completed_steps=int(row["completed_steps"] or 0),
            total_steps=int(row["total_steps"] or 0),
            last_progress_update=row["last_progress_update"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def assign(
        self,
        user_id: str,
        plan_id: str,
        initial_progress: int = 0,
        total_steps: Optional[int] = None,
    ) -> UserPlan:
        if not 0 <= initial_progress <= 100:
            raise ValidationError(f"initial_progress must be between 0 and 100, got {initial_progress}")
        if total_steps is not None and total_steps < 0:
            raise ValidationError(f"total_steps must not be negative, got {total_steps}")
        # The plan read doubles as the existence check: no orphan assignments.
        plan = await self.plans.get(plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)
        if total_steps is None:
            total_steps = len(plan.steps)
        completed_steps = steps_for_progress(initial_progress, total_steps)
        timestamp = utc_now()
        user_plan = UserPlan(
            user_id=user_id,
            plan_id=plan_id,
            progress=initial_progress,
            completed_steps=completed_steps,
            total_steps=total_steps,
            last_progress_update=timestamp,
            created_at=timestamp,
            updated_at=timestamp,
        )
        async with connect(self.path) as db:
            await db.execute(
                f"INSERT OR REPLACE INTO user_plans({USER_PLAN_COLUMNS}) VALUES (?,?,?,?,?,?,?,?)",
                (
                    user_plan.user_id,
                    user_plan.plan_id,
                    user_plan.progress,
                    user_plan.completed_steps,
                    user_plan.total_steps,
                    user_plan.last_progress_update,
                    user_plan.created_at,
                    user_plan.updated_at,
                ),
            )
            await db.commit()
        await self.activity.try_record(
            user_id,
            "PLAN_ASSIGNED",
            {
                "plan_id": plan_id,
                "initial_progress": user_plan.progress,
                "completed_steps": completed_steps,
                "total_steps": total_steps,
            },
            timestamp=timestamp,
        )
        return user_plan

    async def get(self, user_id: str, plan_id: str) -> Optional[UserPlan]:
        async with connect(self.path) as db:
            cursor = await db.execute(
                f"SELECT {USER_PLAN_COLUMNS} FROM user_plans WHERE user_id=? AND plan_id=?",
                (user_id, plan_id),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_user_plan(row) if row else None

    async def list_for_user(self, user_id: str) -> List[UserPlan]:
        async with connect(self.path) as db:
            cursor = await db.execute(
                f"SELECT {USER_PLAN_COLUMNS} FROM user_plans WHERE user_id=? ORDER BY created_at ASC, plan_id ASC",
                (user_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_user_plan(row) for row in rows]

    async def get_by_user_id(self, user_id: str) -> List[UserPlanWithPlan]:
        user_plans = await self.list_for_user(user_id)
        plans = await self.plans.get_many(up.plan_id for up in user_plans)
        results: List[UserPlanWithPlan] = []
        for user_plan in user_plans:
            plan = plans.get(user_plan.plan_id)
            if plan is None:
                logger.warning("User %s has an assignment for missing plan %s", user_id, user_plan.plan_id)
            results.append(UserPlanWithPlan(**user_plan.model_dump(), plan=plan))
        return results

    async def list_all(self, limit: int = 200, offset: int = 0) -> List[UserPlan]:
        async with connect(self.path) as db:
            cursor = await db.execute(
                f"SELECT {USER_PLAN_COLUMNS} FROM user_plans ORDER BY user_id ASC, plan_id ASC LIMIT ? OFFSET ?",
                (limit, offset),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_user_plan(row) for row in rows]

    async def update_progress(
        self,
        user_id: str,
        plan_id: str,
        progress: int,
        completed_steps: int,
        total_steps: int,
    ) -> UserPlan:
        """Overwrite the summary (last writer wins) and log the transition."""
        timestamp = utc_now()
        # Read as late as possible so previous_progress is rarely stale; not race-free.
        current = await self.get(user_id, plan_id)
        if current is None:
            raise AssignmentNotFound(user_id, plan_id)
        async with connect(self.path) as db:
            cursor = await db.execute(
                "UPDATE user_plans SET progress=?, completed_steps=?, total_steps=?, last_progress_update=?, "
                "updated_at=? WHERE user_id=? AND plan_id=?",
                (progress, completed_steps, total_steps, timestamp, timestamp, user_id, plan_id),
            )
            written = cursor.rowcount
            await cursor.close()
            await db.commit()
        if written == 0:
            raise AssignmentNotFound(user_id, plan_id)
        updated = current.model_copy(
            update={
                "progress": progress,
                "completed_steps": completed_steps,
                "total_steps": total_steps,
                "last_progress_update": timestamp,
                "updated_at": timestamp,
            }
        )
        await self.activity.try_record(
            user_id,
            "PROGRESS_UPDATE",
            {
                "plan_id": plan_id,
                "previous_progress": current.progress,
                "new_progress": progress,
                "completed_steps": completed_steps,
                "total_steps": total_steps,
            },
            timestamp=timestamp,
        )
        return updated

    async def remove(self, user_id: str, plan_id: str) -> None:
        async with connect(self.path) as db:
            await db.execute("DELETE FROM user_plans WHERE user_id=? AND plan_id=?", (user_id, plan_id))
            await db.commit()
