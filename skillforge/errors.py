"""Error kinds surfaced by the stores, the reconciler and the HTTP layer."""

from typing import Optional


class SkillForgeError(Exception):
    code = "skillforge_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(SkillForgeError, ValueError):
    code = "validation_error"
    status_code = 422


class NotFoundError(SkillForgeError, LookupError):
    code = "not_found"
    status_code = 404


class PlanNotFound(NotFoundError):
    code = "plan_not_found"

    def __init__(self, plan_id: str):
        super().__init__(f"Plan {plan_id} not found")
        self.plan_id = plan_id


class AssignmentNotFound(NotFoundError):
    code = "assignment_not_found"

    def __init__(self, user_id: str, plan_id: str):
        super().__init__(f"Plan {plan_id} is not assigned to user {user_id}")
        self.user_id = user_id
        self.plan_id = plan_id


class StepNotFound(NotFoundError, ValidationError):
    code = "step_not_found"
    status_code = 404

    def __init__(self, plan_id: str, step_id: str):
        super().__init__(f"Step {step_id} not found in plan {plan_id}")
        self.plan_id = plan_id
        self.step_id = step_id


class ConflictError(SkillForgeError):
    """Conditional write lost against a newer revision."""

    code = "conflict"
    status_code = 409


class BackendUnavailable(SkillForgeError):
    code = "backend_unavailable"
    status_code = 503


class ProvisionError(SkillForgeError):
    code = "provision_failed"
    status_code = 503
