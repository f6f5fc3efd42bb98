import pytest

from skillforge.db import Database
from skillforge.errors import ConflictError, PlanNotFound, ValidationError
from skillforge.plan_store import PlanStore
from skillforge.schemas import PlanUpdate
from tests.fakes import sample_plan


async def _store(tmp_path, name="plan.db") -> PlanStore:
    db_path = tmp_path / name
    await Database(str(db_path)).init()
    return PlanStore(str(db_path))


@pytest.mark.asyncio
async def test_create_and_get_round_trip(tmp_path):
    store = await _store(tmp_path)
    plan = await store.create(sample_plan(3))
    assert plan.plan_id.startswith("plan_")
    assert plan.revision == 0
    assert plan.estimated_time_to_complete == "6 weeks"

    loaded = await store.get(plan.plan_id)
    assert loaded == plan
    assert [s.id for s in loaded.steps] == ["s1", "s2", "s3"]
    assert not any(s.completed for s in loaded.steps)


@pytest.mark.asyncio
async def test_create_assigns_positional_ids_and_coerces_ints(tmp_path):
    store = await _store(tmp_path)
    plan = await store.create(
        {
            "title": "Mixed ids",
            "steps": [{"title": "no id"}, {"stepId": 7, "title": "numbered"}, {"title": "third"}],
        }
    )
    assert [s.id for s in plan.steps] == ["1", "7", "3"]


@pytest.mark.asyncio
async def test_create_rejects_duplicate_step_ids(tmp_path):
    store = await _store(tmp_path)
    with pytest.raises(ValidationError):
        await store.create({"title": "dupes", "steps": [{"id": "a"}, {"id": "a"}]})


@pytest.mark.asyncio
async def test_create_rejects_missing_title(tmp_path):
    store = await _store(tmp_path)
    with pytest.raises(ValidationError):
        await store.create({"steps": []})


@pytest.mark.asyncio
async def test_get_missing_plan(tmp_path):
    store = await _store(tmp_path)
    assert await store.get("plan_missing") is None
    with pytest.raises(PlanNotFound):
        await store.get_or_raise("plan_missing")


@pytest.mark.asyncio
async def test_update_applies_only_set_fields_and_bumps_revision(tmp_path):
    store = await _store(tmp_path)
    plan = await store.create(sample_plan(2))
    updated = await store.update(plan.plan_id, {"notes": "halfway"})
    assert updated.notes == "halfway"
    assert updated.title == plan.title
    assert updated.steps == plan.steps
    assert updated.revision == 1
    assert updated.created_at == plan.created_at

    cleared = await store.update(plan.plan_id, PlanUpdate(skill=None))
    assert cleared.skill is None
    assert cleared.revision == 2
    assert (await store.get(plan.plan_id)).skill is None


@pytest.mark.asyncio
async def test_update_with_stale_revision_conflicts(tmp_path):
    store = await _store(tmp_path)
    plan = await store.create(sample_plan(2))
    await store.update(plan.plan_id, {"notes": "first"}, expected_revision=0)
    with pytest.raises(ConflictError):
        await store.update(plan.plan_id, {"notes": "second"}, expected_revision=0)
    assert (await store.get(plan.plan_id)).notes == "first"


@pytest.mark.asyncio
async def test_update_missing_plan(tmp_path):
    store = await _store(tmp_path)
    with pytest.raises(PlanNotFound):
        await store.update("plan_missing", {"notes": "x"})


@pytest.mark.asyncio
async def test_get_many_skips_missing(tmp_path):
    store = await _store(tmp_path)
    a = await store.create(sample_plan(1, title="A"))
    b = await store.create(sample_plan(1, title="B"))
    found = await store.get_many([a.plan_id, "plan_missing", b.plan_id, a.plan_id])
    assert set(found) == {a.plan_id, b.plan_id}
    assert found[b.plan_id].title == "B"
    assert await store.get_many([]) == {}


@pytest.mark.asyncio
async def test_delete_is_idempotent(tmp_path):
    store = await _store(tmp_path)
    plan = await store.create(sample_plan(1))
    await store.delete(plan.plan_id)
    await store.delete(plan.plan_id)
    assert await store.get(plan.plan_id) is None


@pytest.mark.asyncio
async def test_update_only_moves_completion_flags(tmp_path):
    store = await _store(tmp_path)
    plan = await store.create(sample_plan(3))

    with pytest.raises(ValidationError):
        await store.update(plan.plan_id, {"steps": [{"id": "zz", "title": "renamed"}]})
    reordered = [plan.steps[1], plan.steps[0], plan.steps[2]]
    with pytest.raises(ValidationError):
        await store.update(plan.plan_id, {"steps": reordered})
    retitled = [s.model_copy(update={"title": "renamed"}) if s.id == "s2" else s for s in plan.steps]
    with pytest.raises(ValidationError):
        await store.update(plan.plan_id, {"steps": retitled})
    assert (await store.get(plan.plan_id)).revision == 0

    flipped = [s.model_copy(update={"completed": True}) if s.id == "s2" else s for s in plan.steps]
    updated = await store.update(plan.plan_id, {"steps": flipped})
    assert [s.completed for s in updated.steps] == [False, True, False]
    assert [s.title for s in updated.steps] == ["Step 1", "Step 2", "Step 3"]
