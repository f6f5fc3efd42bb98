"""Keeps the per-user progress summary consistent with a plan's step list.

The backend only offers single-record atomicity, so every operation here is
an ordered sequence of independent writes:

1. the plan (authoritative step list), conditional on the revision read;
2. the assignment summary, recomputed from the steps just written;
3. the activity log.

A failure in (1) aborts the operation. Failures in (2) or (3) are logged and
reported as ``PartialReconciliation`` warnings; the plan write stands and the
summary is corrected by the next reconciliation or by ``repair_all``.

The caller must hold an assignment for the plan; without one the operation
raises ``AssignmentNotFound`` before anything is written.
"""

import logging
from typing import Callable, Iterable, List, Optional, Tuple

from .activity_log import ActivityLog
from .assignment_store import AssignmentStore
from .errors import AssignmentNotFound, BackendUnavailable, ConflictError, StepNotFound, ValidationError
from .plan_store import PlanStore
from .schemas import (
    PartialReconciliation,
    Plan,
    PlanUpdate,
    ProgressSummary,
    ReconcileResult,
    RepairReport,
    StepState,
    UserPlan,
)

logger = logging.getLogger("uvicorn.error")

# Builds the write for a freshly read plan: (update, ids of steps it flips).
PlanMutation = Callable[[Plan], Tuple[Optional[PlanUpdate], List[str]]]


class ProgressReconciler:
    def __init__(
        self,
        plans: PlanStore,
        assignments: AssignmentStore,
        activity: ActivityLog,
        *,
        optimistic: bool = True,
        retries: int = 3,
    ):
        self.plans = plans
        self.assignments = assignments
        self.activity = activity
        self.optimistic = optimistic
        self.retries = retries

    async def _write_plan(self, plan_id: str, mutate: PlanMutation) -> Tuple[Plan, List[str]]:
        attempts = self.retries + 1 if self.optimistic else 1
        for attempt in range(1, attempts + 1):
            plan = await self.plans.get_or_raise(plan_id)
            update, changed = mutate(plan)
            if update is None:
                return plan, changed
            expected = plan.revision if self.optimistic else None
            try:
                written = await self.plans.update(plan_id, update, expected_revision=expected)
            except ConflictError:
                if attempt >= attempts:
                    raise
                logger.info("Plan %s write conflicted (attempt %d/%d); re-reading", plan_id, attempt, attempts)
                continue
            return written, changed
        raise ConflictError(f"Plan {plan_id} could not be written")

    async def _sync_summary(self, user_id: str, plan: Plan, only_if_drifted: bool = False) -> ReconcileResult:
        summary = ProgressSummary.from_steps(plan.steps)
        result = ReconcileResult(plan=plan, summary=summary)
        try:
            if only_if_drifted:
                current = await self.assignments.get(user_id, plan.plan_id)
                if current is None or current.summary() == summary:
                    result.assignment = current
                    return result
            result.assignment = await self.assignments.update_progress(
                user_id,
                plan.plan_id,
                summary.progress,
                summary.completed_steps,
                summary.total_steps,
            )
        except BackendUnavailable as exc:
            logger.warning(
                "Partial reconciliation: plan %s written but summary for user %s is stale: %s",
                plan.plan_id,
                user_id,
                exc,
            )
            result.warnings.append(PartialReconciliation(stage="assignment", error=str(exc)))
        return result

    async def _record_step_events(self, user_id: str, result: ReconcileResult) -> None:
        for step_id in result.changed_steps:
            step = result.plan.find_step(step_id)
            if step is None:
                continue
            action = "STEP_COMPLETED" if step.completed else "STEP_UNCOMPLETED"
            event = await self.activity.try_record(
                user_id,
                action,
                {"plan_id": result.plan.plan_id, "step_id": step_id, "completed": step.completed},
            )
            if event is None:
                result.warnings.append(
                    PartialReconciliation(stage="activity", error=f"{action} for step {step_id} not recorded")
                )

    async def _require_assignment(self, user_id: str, plan_id: str) -> None:
        # Checked before the plan write so a caller without the plan changes nothing.
        if await self.assignments.get(user_id, plan_id) is None:
            raise AssignmentNotFound(user_id, plan_id)

    async def toggle_step(self, user_id: str, plan_id: str, step_id: str) -> ReconcileResult:
        await self._require_assignment(user_id, plan_id)

        def flip(plan: Plan) -> Tuple[Optional[PlanUpdate], List[str]]:
            if plan.find_step(step_id) is None:
                raise StepNotFound(plan_id, step_id)
            steps = [
                step.model_copy(update={"completed": not step.completed}) if step.id == step_id else step
                for step in plan.steps
            ]
            return PlanUpdate(steps=steps), [step_id]

        plan, changed = await self._write_plan(plan_id, flip)
        result = await self._sync_summary(user_id, plan)
        result.changed_steps = changed
        await self._record_step_events(user_id, result)
        return result

    async def update_steps(self, user_id: str, plan_id: str, states: Iterable[StepState]) -> ReconcileResult:
        """Apply completion flags in bulk; titles and descriptions are never touched."""
        wanted = {}
        for state in states:
            if state.id in wanted:
                raise ValidationError(f"Step {state.id} listed more than once")
            wanted[state.id] = state.completed

        await self._require_assignment(user_id, plan_id)

        def apply(plan: Plan) -> Tuple[Optional[PlanUpdate], List[str]]:
            known = {step.id for step in plan.steps}
            for step_id in wanted:
                if step_id not in known:
                    raise StepNotFound(plan_id, step_id)
            changed = [s.id for s in plan.steps if s.id in wanted and s.completed != wanted[s.id]]
            if not changed:
                return None, []
            steps = [
                step.model_copy(update={"completed": wanted[step.id]}) if step.id in changed else step
                for step in plan.steps
            ]
            return PlanUpdate(steps=steps), changed

        plan, changed = await self._write_plan(plan_id, apply)
        result = await self._sync_summary(user_id, plan)
        result.changed_steps = changed
        await self._record_step_events(user_id, result)
        return result

    async def update_notes(self, user_id: str, plan_id: str, notes: str) -> ReconcileResult:
        await self._require_assignment(user_id, plan_id)

        def set_notes(plan: Plan) -> Tuple[Optional[PlanUpdate], List[str]]:
            return PlanUpdate(notes=notes), []

        plan, _ = await self._write_plan(plan_id, set_notes)
        event = await self.activity.try_record(
            user_id, "NOTES_UPDATED", {"plan_id": plan_id, "length": len(notes)}
        )
        # Notes do not move progress; only a drifted summary is rewritten.
        result = await self._sync_summary(user_id, plan, only_if_drifted=True)
        if event is None:
            result.warnings.append(PartialReconciliation(stage="activity", error="NOTES_UPDATED not recorded"))
        return result

    async def _repair_batch(self, user_plans: List[UserPlan], report: RepairReport) -> None:
        plans = await self.plans.get_many(up.plan_id for up in user_plans)
        for user_plan in user_plans:
            report.checked += 1
            plan = plans.get(user_plan.plan_id)
            if plan is None:
                report.orphaned += 1
                continue
            summary = ProgressSummary.from_steps(plan.steps)
            if user_plan.summary() == summary:
                continue
            try:
                await self.assignments.update_progress(
                    user_plan.user_id,
                    user_plan.plan_id,
                    summary.progress,
                    summary.completed_steps,
                    summary.total_steps,
                )
            except (BackendUnavailable, AssignmentNotFound) as exc:
                report.failed += 1
                logger.warning(
                    "Repair of user %s plan %s failed: %s", user_plan.user_id, user_plan.plan_id, exc
                )
                continue
            report.repaired += 1
            report.repaired_keys.append({"user_id": user_plan.user_id, "plan_id": user_plan.plan_id})

    async def repair_user(self, user_id: str) -> RepairReport:
        report = RepairReport()
        await self._repair_batch(await self.assignments.list_for_user(user_id), report)
        logger.info("Repair for user %s: %s", user_id, report.model_dump(exclude={"repaired_keys"}))
        return report

    async def repair_all(self, page_size: int = 200) -> RepairReport:
        """Recompute every summary from its plan; safe to re-run at any time."""
        report = RepairReport()
        offset = 0
        while True:
            page = await self.assignments.list_all(limit=page_size, offset=offset)
            if not page:
                break
            await self._repair_batch(page, report)
            offset += len(page)
        logger.info("Repair pass: %s", report.model_dump(exclude={"repaired_keys"}))
        return report
