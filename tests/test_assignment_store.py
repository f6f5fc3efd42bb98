import pytest

from skillforge.errors import AssignmentNotFound, PlanNotFound, ValidationError
from tests.fakes import sample_plan


@pytest.mark.asyncio
async def test_assign_missing_plan_writes_nothing(service):
    with pytest.raises(PlanNotFound):
        await service.assignments.assign("u1", "plan_missing")
    assert await service.assignments.list_for_user("u1") == []
    assert await service.activity.list_by_user("u1") == []


@pytest.mark.asyncio
async def test_assign_derives_summary_from_initial_progress(service):
    plan = await service.plans.create(sample_plan(4))
    user_plan = await service.assignments.assign("u1", plan.plan_id, initial_progress=50)
    assert user_plan.progress == 50
    assert user_plan.completed_steps == 2
    assert user_plan.total_steps == 4

    events = await service.activity.list_by_user("u1")
    assert [e.action for e in events] == ["PLAN_ASSIGNED"]
    assert events[0].plan_id == plan.plan_id
    assert events[0].timestamp == user_plan.created_at


@pytest.mark.asyncio
async def test_reassign_replaces_summary(service):
    plan = await service.plans.create(sample_plan(4))
    await service.assignments.assign("u1", plan.plan_id, initial_progress=75)
    again = await service.assignments.assign("u1", plan.plan_id)
    assert again.progress == 0
    assert len(await service.assignments.list_for_user("u1")) == 1


@pytest.mark.asyncio
async def test_update_progress_records_transition(service):
    plan = await service.plans.create(sample_plan(4))
    await service.assignments.assign("u1", plan.plan_id)
    updated = await service.assignments.update_progress("u1", plan.plan_id, 25, 1, 4)
    assert updated.progress == 25
    assert updated.last_progress_update == updated.updated_at

    history = await service.activity.list_progress_history("u1", plan.plan_id)
    assert len(history) == 1
    assert history[0].details == {
        "plan_id": plan.plan_id,
        "previous_progress": 0,
        "new_progress": 25,
        "completed_steps": 1,
        "total_steps": 4,
    }


@pytest.mark.asyncio
async def test_update_progress_without_assignment(service):
    plan = await service.plans.create(sample_plan(2))
    with pytest.raises(AssignmentNotFound):
        await service.assignments.update_progress("u1", plan.plan_id, 50, 1, 2)
    assert await service.activity.list_by_user("u1") == []


@pytest.mark.asyncio
async def test_get_by_user_id_joins_plans_and_keeps_orphans(service):
    first = await service.plans.create(sample_plan(2, title="First"))
    second = await service.plans.create(sample_plan(2, title="Second"))
    await service.assignments.assign("u1", first.plan_id)
    await service.assignments.assign("u1", second.plan_id)
    await service.assignments.assign("u2", second.plan_id)
    await service.plans.delete(first.plan_id)

    rows = await service.assignments.get_by_user_id("u1")
    assert [r.plan_id for r in rows] == [first.plan_id, second.plan_id]
    assert rows[0].plan is None
    assert rows[1].plan.title == "Second"


@pytest.mark.asyncio
async def test_list_all_pages_in_key_order(service):
    plan = await service.plans.create(sample_plan(1))
    for user in ("u3", "u1", "u2"):
        await service.assignments.assign(user, plan.plan_id)
    first = await service.assignments.list_all(limit=2, offset=0)
    rest = await service.assignments.list_all(limit=2, offset=2)
    assert [up.user_id for up in first + rest] == ["u1", "u2", "u3"]


@pytest.mark.asyncio
async def test_remove_is_idempotent(service):
    plan = await service.plans.create(sample_plan(1))
    await service.assignments.assign("u1", plan.plan_id)
    await service.assignments.remove("u1", plan.plan_id)
    await service.assignments.remove("u1", plan.plan_id)
    assert await service.assignments.get("u1", plan.plan_id) is None


@pytest.mark.asyncio
async def test_assign_rejects_out_of_range_input(service):
    plan = await service.plans.create(sample_plan(4))
    with pytest.raises(ValidationError):
        await service.assignments.assign("u1", plan.plan_id, initial_progress=101)
    with pytest.raises(ValidationError):
        await service.assignments.assign("u1", plan.plan_id, initial_progress=-5)
    with pytest.raises(ValidationError):
        await service.assignments.assign("u1", plan.plan_id, total_steps=-1)
    assert await service.assignments.get("u1", plan.plan_id) is None
    assert await service.activity.list_by_user("u1") == []
