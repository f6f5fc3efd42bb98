from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, Field


ActivityAction = Literal[
    "PLAN_ASSIGNED",
    "PROGRESS_UPDATE",
    "STEP_COMPLETED",
    "STEP_UNCOMPLETED",
    "NOTES_UPDATED",
    "PLAN_REMOVED",
    "PREFERENCES_UPDATED",
]
ACTIVITY_ACTIONS = {
    "PLAN_ASSIGNED",
    "PROGRESS_UPDATE",
    "STEP_COMPLETED",
    "STEP_UNCOMPLETED",
    "NOTES_UPDATED",
    "PLAN_REMOVED",
    "PREFERENCES_UPDATED",
}


def percent_complete(completed_steps: int, total_steps: int) -> int:
    """Round-half-up percentage in integer arithmetic; zero steps means 0%."""
    if total_steps <= 0:
        return 0
    return (200 * completed_steps + total_steps) // (2 * total_steps)


def steps_for_progress(progress: int, total_steps: int) -> int:
    """Inverse of percent_complete, round-half-up on the step count."""
    if total_steps <= 0:
        return 0
    progress = max(0, min(100, int(progress)))
    return (2 * progress * total_steps + 100) // 200


def _coerce_id(value: Any) -> Any:
    if value is None:
        return value
    if isinstance(value, bool):
        raise ValueError("step id must be a string or integer")
    return str(value)


StepId = Annotated[str, BeforeValidator(_coerce_id)]


class Step(BaseModel):
    id: StepId
    title: str = ""
    description: str = ""
    completed: bool = False


class StepInput(BaseModel):
    """Step as produced by the content generator; the id may be missing."""

    id: Optional[StepId] = Field(default=None, validation_alias=AliasChoices("id", "stepId", "step_id"))
    title: str = ""
    description: str = ""
    completed: bool = False


class PlanContent(BaseModel):
    title: str
    description: str = ""
    estimated_time_to_complete: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("estimated_time_to_complete", "estimatedTimeToComplete"),
    )
    tags: List[str] = Field(default_factory=list)
    skill: Optional[str] = None
    steps: List[StepInput] = Field(default_factory=list)
    notes: str = ""

    model_config = {"extra": "ignore"}


class Plan(BaseModel):
    plan_id: str
    title: str
    description: str = ""
    estimated_time_to_complete: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    skill: Optional[str] = None
    steps: List[Step] = Field(default_factory=list)
    notes: str = ""
    revision: int = 0
    created_at: str
    updated_at: str

    def find_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class PlanUpdate(BaseModel):
    """Partial plan write; only fields that were explicitly set are applied."""

    title: Optional[str] = None
    description: Optional[str] = None
    estimated_time_to_complete: Optional[str] = None
    tags: Optional[List[str]] = None
    skill: Optional[str] = None
    steps: Optional[List[Step]] = None
    notes: Optional[str] = None


class ProgressSummary(BaseModel):
    progress: int = 0
    completed_steps: int = 0
    total_steps: int = 0

    @classmethod
    def from_steps(cls, steps: List[Step]) -> "ProgressSummary":
        completed = sum(1 for step in steps if step.completed)
        total = len(steps)
        return cls(progress=percent_complete(completed, total), completed_steps=completed, total_steps=total)


class UserPlan(BaseModel):
    user_id: str
    plan_id: str
    progress: int = Field(default=0, ge=0, le=100)
    completed_steps: int = Field(default=0, ge=0)
    total_steps: int = Field(default=0, ge=0)
    last_progress_update: str
    created_at: str
    updated_at: str

    def summary(self) -> ProgressSummary:
        return ProgressSummary(
            progress=self.progress,
            completed_steps=self.completed_steps,
            total_steps=self.total_steps,
        )


class UserPlanWithPlan(UserPlan):
    plan: Optional[Plan] = None


class ActivityEvent(BaseModel):
    activity_id: str
    user_id: str
    action: ActivityAction
    timestamp: str
    plan_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class PartialReconciliation(BaseModel):
    """A denormalized write that failed after the plan write succeeded."""

    stage: Literal["assignment", "activity"]
    error: str


class ReconcileResult(BaseModel):
    plan: Plan
    summary: ProgressSummary
    assignment: Optional[UserPlan] = None
    changed_steps: List[str] = Field(default_factory=list)
    warnings: List[PartialReconciliation] = Field(default_factory=list)

    @property
    def summary_synced(self) -> bool:
        return not any(w.stage == "assignment" for w in self.warnings)


class RepairReport(BaseModel):
    checked: int = 0
    repaired: int = 0
    orphaned: int = 0
    failed: int = 0
    repaired_keys: List[Dict[str, str]] = Field(default_factory=list)


class UserPreferences(BaseModel):
    user_id: str
    learning_style: str = "visual"
    pace_preference: str = "moderate"
    difficulty_preference: str = "challenging"
    interests: List[str] = Field(default_factory=list)
    created_at: str
    updated_at: str


class PreferencesUpdate(BaseModel):
    learning_style: Optional[str] = None
    pace_preference: Optional[str] = None
    difficulty_preference: Optional[str] = None
    interests: Optional[List[str]] = None


class StepState(BaseModel):
    id: StepId
    completed: bool


class AssignRequest(BaseModel):
    initial_progress: int = Field(default=0, ge=0, le=100)


class StepsUpdateRequest(BaseModel):
    steps: List[StepState]


class NotesUpdateRequest(BaseModel):
    notes: str = ""


class RepairRequest(BaseModel):
    user_id: Optional[str] = None


class PruneRequest(BaseModel):
    days: Optional[int] = Field(default=None, ge=1)
