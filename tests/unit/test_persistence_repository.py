from datetime import timedelta

import pytest

from conftest import COMPANY, PO, T0, make_definition
from ratify.contracts import (
    ApprovalComment,
    Decision,
    EscalationLevel,
    InstanceStatus,
    StepExecution,
    StepStatus,
    WorkflowInstance,
)
import ratify.persistence as persistence
from ratify.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
    repository_for_url,
    set_repository,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryWorkflowRepository()
    else:
        repo = SQLiteWorkflowRepository(tmp_path / "wf.db")
        yield repo
        repo.close()


def _instance(definition) -> WorkflowInstance:
    return WorkflowInstance(
        definition_id=definition.id,
        definition_version=definition.version,
        company_id=COMPANY,
        business_object=PO,
        triggered_by="requester",
        data={"amount": 1200},
    )


def _execution(instance, index=0, due=T0) -> StepExecution:
    return StepExecution(
        instance_id=instance.id,
        company_id=COMPANY,
        step_index=index,
        step_name=f"Step {index}",
        assigned_role="manager",
        candidates=["u1"],
        created_at=T0,
        due_at=due,
    )


@pytest.mark.asyncio
async def test_definition_versions(repo):
    first = await repo.save_definition(make_definition())
    second = await repo.save_definition(make_definition(is_active=False))
    other = await repo.save_definition(make_definition(name="Expense approval"))

    assert first.version == 1
    assert second.id == first.id
    assert second.version == 2
    assert other.id != first.id

    assert (await repo.get_definition(first.id)).version == 2
    assert (await repo.get_definition(first.id, 1)).is_active
    assert await repo.get_definition(first.id, 7) is None
    assert await repo.get_definition("missing") is None

    listed = await repo.list_definitions(COMPANY)
    assert sorted(d.name for d in listed) == ["Expense approval", "Purchase approval"]
    active = await repo.list_definitions(COMPANY, active_only=True)
    assert [d.name for d in active] == ["Expense approval"]
    assert await repo.list_definitions("other") == []


@pytest.mark.asyncio
async def test_instance_crud(repo):
    definition = await repo.save_definition(make_definition())
    instance = _instance(definition)
    await repo.create_instance(instance)

    loaded = await repo.get_instance(instance.id)
    assert loaded == instance
    assert loaded.data == {"amount": 1200}

    updated = await repo.update_instance(
        loaded.model_copy(update={"status": InstanceStatus.IN_PROGRESS})
    )
    assert updated.version == 1
    assert (await repo.get_instance(instance.id)).status is InstanceStatus.IN_PROGRESS

    # a write based on the old version loses
    stale = loaded.model_copy(update={"status": InstanceStatus.CANCELLED})
    assert await repo.update_instance(stale) is None
    assert await repo.update_instance(_instance(definition)) is None
    stored = await repo.get_instance(instance.id)
    assert stored.status is InstanceStatus.IN_PROGRESS
    assert stored.version == 1

    finished = await repo.update_instance(
        stored.model_copy(update={"status": InstanceStatus.CANCELLED})
    )
    assert finished.version == 2
    assert [i.id for i in await repo.list_instances(COMPANY)] == [instance.id]
    assert await repo.list_instances("other") == []
    assert await repo.get_instance("missing") is None


@pytest.mark.asyncio
async def test_conditional_update_is_compare_and_swap(repo):
    definition = await repo.save_definition(make_definition())
    instance = _instance(definition)
    await repo.create_instance(instance)
    execution = _execution(instance)
    await repo.create_step_execution(execution)

    updated = await repo.conditional_update_step_execution(
        execution.id,
        0,
        {"status": StepStatus.APPROVED, "decision": Decision.APPROVE, "completed_by": "u1"},
    )
    assert updated is not None
    assert updated.version == 1
    assert updated.status is StepStatus.APPROVED
    assert updated.due_at == execution.due_at

    # same expected version again loses
    assert (
        await repo.conditional_update_step_execution(
            execution.id, 0, {"status": StepStatus.REJECTED}
        )
        is None
    )
    # right version, wrong status loses
    assert (
        await repo.conditional_update_step_execution(
            execution.id, 1, {"status": StepStatus.REJECTED}
        )
        is None
    )
    assert await repo.conditional_update_step_execution("missing", 0, {}) is None

    stored = await repo.get_step_execution(execution.id)
    assert stored.status is StepStatus.APPROVED
    assert stored.completed_by == "u1"


@pytest.mark.asyncio
async def test_conditional_update_with_expected_status(repo):
    definition = await repo.save_definition(make_definition())
    instance = _instance(definition)
    await repo.create_instance(instance)
    execution = _execution(instance).model_copy(update={"status": StepStatus.ORPHANED})
    await repo.create_step_execution(execution)

    assert (
        await repo.conditional_update_step_execution(
            execution.id, 0, {"status": StepStatus.REASSIGNED}
        )
        is None
    )
    moved = await repo.conditional_update_step_execution(
        execution.id, 0, {"status": StepStatus.REASSIGNED}, expected_status=StepStatus.ORPHANED
    )
    assert moved.status is StepStatus.REASSIGNED


@pytest.mark.asyncio
async def test_immutable_fields_cannot_be_patched(repo):
    definition = await repo.save_definition(make_definition())
    instance = _instance(definition)
    await repo.create_instance(instance)
    execution = _execution(instance)
    await repo.create_step_execution(execution)

    with pytest.raises(ValueError):
        await repo.conditional_update_step_execution(
            execution.id, 0, {"due_at": T0 + timedelta(days=1)}
        )


@pytest.mark.asyncio
async def test_pending_lookup_orders_by_due(repo):
    definition = await repo.save_definition(make_definition())
    instance = _instance(definition)
    await repo.create_instance(instance)
    late = _execution(instance, 0, T0 + timedelta(hours=10))
    early = _execution(instance, 1, T0 + timedelta(hours=1))
    done = _execution(instance, 2, T0).model_copy(update={"status": StepStatus.APPROVED})
    for e in (late, early, done):
        await repo.create_step_execution(e)

    pending = await repo.find_pending_step_executions()
    assert [e.id for e in pending] == [early.id, late.id]

    due = await repo.find_pending_step_executions(due_before=T0 + timedelta(hours=2))
    assert [e.id for e in due] == [early.id]

    history = await repo.list_step_executions(instance.id)
    assert [e.id for e in history] == [late.id, early.id, done.id]


@pytest.mark.asyncio
async def test_escalation_level_survives_storage(repo):
    definition = await repo.save_definition(make_definition())
    instance = _instance(definition)
    await repo.create_instance(instance)
    execution = _execution(instance)
    await repo.create_step_execution(execution)

    await repo.conditional_update_step_execution(
        execution.id, 0, {"escalation_level": EscalationLevel.URGENT}
    )

    stored = await repo.get_step_execution(execution.id)
    assert stored.escalation_level is EscalationLevel.URGENT
    assert stored.is_pending


@pytest.mark.asyncio
async def test_comments_are_listed_per_instance_in_order(repo):
    definition = await repo.save_definition(make_definition())
    instance = _instance(definition)
    other = _instance(definition)
    for i in (instance, other):
        await repo.create_instance(i)
    execution = _execution(instance)
    await repo.create_step_execution(execution)

    def comment(text, instance_id=instance.id, **kw):
        return ApprovalComment(
            step_execution_id=execution.id,
            instance_id=instance_id,
            company_id=COMPANY,
            author_id="u1",
            text=text,
            created_at=T0,
            **kw,
        )

    await repo.add_comment(comment("Need the quote"))
    await repo.add_comment(comment("Elsewhere", instance_id=other.id))
    await repo.add_comment(comment("Checked with finance", internal=True))

    listed = await repo.list_comments(instance.id)
    assert [c.text for c in listed] == ["Need the quote", "Checked with finance"]
    assert listed[1].internal
    assert await repo.list_comments("missing") == []

@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(path)
    definition = await repo.save_definition(make_definition())
    instance = _instance(definition)
    await repo.create_instance(instance)
    await repo.create_step_execution(_execution(instance))
    repo.close()

    reopened = SQLiteWorkflowRepository(path)
    assert (await reopened.get_definition(definition.id)).name == "Purchase approval"
    assert len(await reopened.list_step_executions(instance.id)) == 1
    reopened.close()


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("RATIFY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)

    repo = get_repository(f"sqlite://{tmp_path / 'wf.db'}")
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert get_repository() is repo
    repo.close()

    set_repository(None)
    monkeypatch.setenv("RATIFY_CONFIG", str(tmp_path / "missing.yaml"))
    assert isinstance(get_repository(), InMemoryWorkflowRepository)
    assert isinstance(repository_for_url("memory://"), InMemoryWorkflowRepository)

    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")
