from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import AppSettings, load_settings
from .errors import SkillForgeError
from .schemas import (
    AssignRequest,
    NotesUpdateRequest,
    PlanContent,
    PreferencesUpdate,
    PruneRequest,
    ReconcileResult,
    RepairRequest,
    StepsUpdateRequest,
)
from .service import PlanService


def get_service(request: Request) -> PlanService:
    return request.app.state.service


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # Identity is resolved upstream; this service only trusts the forwarded id.
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return x_user_id.strip()


def get_optional_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None


def reconcile_payload(result: ReconcileResult) -> Dict[str, Any]:
    return {
        "plan": result.plan,
        "assignment": result.assignment,
        "summary": result.summary,
        "changed_steps": result.changed_steps,
        "summary_synced": result.summary_synced,
        "warnings": result.warnings,
    }


async def skillforge_error_handler(request: Request, exc: SkillForgeError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


router = APIRouter()


@router.get("/health")
async def health():
    return {"ok": True}


@router.post("/api/plans")
async def create_plan(
    content: PlanContent,
    service: PlanService = Depends(get_service),
    user_id: Optional[str] = Depends(get_optional_user_id),
):
    if user_id:
        plan, assignment = await service.create_and_assign(user_id, content)
        return {"plan": plan, "assignment": assignment}
    plan = await service.create_plan(content)
    return {"plan": plan}


@router.get("/api/plans/{plan_id}")
async def get_plan(plan_id: str, service: PlanService = Depends(get_service)):
    plan = await service.get_plan(plan_id)
    return {"plan": plan}


@router.get("/api/me/plans")
async def list_my_plans(
    service: PlanService = Depends(get_service),
    user_id: str = Depends(get_user_id),
):
    user_plans = await service.list_user_plans(user_id)
    return {"plans": user_plans}


@router.post("/api/me/plans/{plan_id}")
async def assign_plan(
    plan_id: str,
    payload: Optional[AssignRequest] = None,
    service: PlanService = Depends(get_service),
    user_id: str = Depends(get_user_id),
):
    initial_progress = payload.initial_progress if payload else 0
    assignment = await service.assign_plan(user_id, plan_id, initial_progress=initial_progress)
    return {"assignment": assignment}


@router.delete("/api/me/plans/{plan_id}")
async def delete_plan(
    plan_id: str,
    service: PlanService = Depends(get_service),
    user_id: str = Depends(get_user_id),
):
    await service.delete_plan(user_id, plan_id)
    return {"ok": True}


@router.post("/api/me/plans/{plan_id}/steps/{step_id}/toggle")
async def toggle_step(
    plan_id: str,
    step_id: str,
    service: PlanService = Depends(get_service),
    user_id: str = Depends(get_user_id),
):
    result = await service.toggle_step(user_id, plan_id, step_id)
    return reconcile_payload(result)


@router.put("/api/me/plans/{plan_id}/steps")
async def update_steps(
    plan_id: str,
    payload: StepsUpdateRequest,
    service: PlanService = Depends(get_service),
    user_id: str = Depends(get_user_id),
):
    result = await service.update_steps(user_id, plan_id, payload.steps)
    return reconcile_payload(result)


@router.put("/api/me/plans/{plan_id}/notes")
async def update_notes(
    plan_id: str,
    payload: NotesUpdateRequest,
    service: PlanService = Depends(get_service),
    user_id: str = Depends(get_user_id),
):
    result = await service.update_notes(user_id, plan_id, payload.notes)
    return reconcile_payload(result)


@router.get("/api/me/plans/{plan_id}/history")
async def progress_history(
    plan_id: str,
    limit: Optional[int] = None,
    service: PlanService = Depends(get_service),
    user_id: str = Depends(get_user_id),
):
    events = await service.progress_history(user_id, plan_id, limit=limit)
    return {"history": events}


@router.get("/api/me/activity")
async def list_activity(
    action: Optional[str] = None,
    limit: Optional[int] = None,
    service: PlanService = Depends(get_service),
    user_id: str = Depends(get_user_id),
):
    events = await service.list_activity(user_id, action=action, limit=limit)
    return {"activities": events}


@router.get("/api/me/preferences")
async def get_preferences(
    service: PlanService = Depends(get_service),
    user_id: str = Depends(get_user_id),
):
    prefs = await service.get_preferences(user_id)
    return {"preferences": prefs}


@router.put("/api/me/preferences")
async def update_preferences(
    payload: PreferencesUpdate,
    service: PlanService = Depends(get_service),
    user_id: str = Depends(get_user_id),
):
    prefs = await service.update_preferences(user_id, payload)
    return {"preferences": prefs}


@router.post("/api/admin/repair")
async def repair(
    payload: Optional[RepairRequest] = None,
    service: PlanService = Depends(get_service),
):
    report = await service.repair(user_id=payload.user_id if payload else None)
    return {"report": report}


@router.post("/api/admin/activity/prune")
async def prune_activity(
    payload: Optional[PruneRequest] = None,
    service: PlanService = Depends(get_service),
):
    removed = await service.prune_activity(days=payload.days if payload else None)
    return {"removed": removed}


def create_app(settings: AppSettings, *, service: Optional[PlanService] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.service.init()
        yield

    app = FastAPI(title="SkillForge Progress Engine", lifespan=lifespan)
    app.state.settings = settings
    app.state.service = service or PlanService(settings)
    app.add_exception_handler(SkillForgeError, skillforge_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("SKILLFORGE_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "skillforge.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
