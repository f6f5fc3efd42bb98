import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from .activity_log import ActivityLog
from .assignment_store import AssignmentStore
from .config import AppSettings
from .db import Database
from .errors import ValidationError
from .plan_store import PlanStore
from .preferences_store import PreferencesStore
from .reconciler import ProgressReconciler
from .schemas import (
    ActivityEvent,
    Plan,
    PlanContent,
    PreferencesUpdate,
    ReconcileResult,
    RepairReport,
    StepState,
    UserPlan,
    UserPlanWithPlan,
    UserPreferences,
)

logger = logging.getLogger("uvicorn.error")


class PlanService:
    """Entry point used by the UI/content layer; wires the stores to one database."""

    def __init__(self, settings: AppSettings, db: Optional[Database] = None):
        self.settings = settings
        self.db = db or Database(settings.database_path)
        path = self.db.path
        self.activity = ActivityLog(
            path,
            default_limit=settings.activity_list_default,
            max_limit=settings.activity_list_max,
        )
        self.plans = PlanStore(path)
        self.assignments = AssignmentStore(path, self.plans, self.activity)
        self.preferences = PreferencesStore(path)
        self.reconciler = ProgressReconciler(
            self.plans,
            self.assignments,
            self.activity,
            optimistic=settings.optimistic_concurrency,
            retries=settings.plan_write_retries,
        )

    async def init(self) -> None:
        await self.db.init()

    async def create_plan(self, content: Union[PlanContent, Mapping[str, Any]]) -> Plan:
        return await self.plans.create(content)

    async def get_plan(self, plan_id: str) -> Plan:
        return await self.plans.get_or_raise(plan_id)

    async def assign_plan(self, user_id: str, plan_id: str, initial_progress: int = 0) -> UserPlan:
        return await self.assignments.assign(user_id, plan_id, initial_progress=initial_progress)

    async def create_and_assign(
        self, user_id: str, content: Union[PlanContent, Mapping[str, Any]]
    ) -> Tuple[Plan, UserPlan]:
        plan = await self.plans.create(content)
        user_plan = await self.assignments.assign(user_id, plan.plan_id)
        return plan, user_plan

    async def toggle_step(self, user_id: str, plan_id: str, step_id: str) -> ReconcileResult:
        return await self.reconciler.toggle_step(user_id, plan_id, step_id)

    async def update_steps(self, user_id: str, plan_id: str, steps: Iterable[StepState]) -> ReconcileResult:
        return await self.reconciler.update_steps(user_id, plan_id, steps)

    async def update_notes(self, user_id: str, plan_id: str, notes: str) -> ReconcileResult:
        return await self.reconciler.update_notes(user_id, plan_id, notes)

    async def delete_plan(self, user_id: str, plan_id: str) -> None:
        """Unlink the plan from this user, then delete it.

        A caller without an assignment for the plan changes nothing, which also
        makes a repeated delete a no-op.
        """
        if await self.assignments.get(user_id, plan_id) is None:
            return
        await self.assignments.remove(user_id, plan_id)
        await self.plans.delete(plan_id)
        await self.activity.try_record(user_id, "PLAN_REMOVED", {"plan_id": plan_id})

    async def list_user_plans(self, user_id: str) -> List[UserPlanWithPlan]:
        return await self.assignments.get_by_user_id(user_id)

    async def list_activity(
        self, user_id: str, action: Optional[str] = None, limit: Optional[int] = None
    ) -> List[ActivityEvent]:
        if action and action.lower() != "all":
            return await self.activity.list_by_user_and_action(user_id, action.upper(), limit)
        return await self.activity.list_by_user(user_id, limit)

    async def progress_history(self, user_id: str, plan_id: str, limit: Optional[int] = None) -> List[ActivityEvent]:
        return await self.activity.list_progress_history(user_id, plan_id, limit)

    async def get_preferences(self, user_id: str) -> UserPreferences:
        return await self.preferences.get_or_default(user_id)

    async def update_preferences(
        self, user_id: str, partial: Union[PreferencesUpdate, Mapping[str, Any]]
    ) -> UserPreferences:
        prefs = await self.preferences.update(user_id, partial)
        await self.activity.try_record(
            user_id,
            "PREFERENCES_UPDATED",
            {
                "learning_style": prefs.learning_style,
                "pace_preference": prefs.pace_preference,
                "difficulty_preference": prefs.difficulty_preference,
            },
        )
        return prefs

    async def repair(self, user_id: Optional[str] = None) -> RepairReport:
        if user_id:
            return await self.reconciler.repair_user(user_id)
        return await self.reconciler.repair_all(page_size=self.settings.repair_page_size)

    async def prune_activity(self, days: Optional[int] = None) -> int:
        """Delete events older than the retention window. Refuses to run without a window."""
        days = days or self.settings.activity_retention_days
        if not days:
            raise ValidationError("No activity retention window configured")
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        cutoff_text = cutoff.isoformat(timespec="microseconds").replace("+00:00", "Z")
        removed = await self.activity.prune_before(cutoff_text)
        logger.info("Pruned %d activity events older than %s", removed, cutoff_text)
        return removed
