import pytest

from errors import ConflictError, NotFoundError, WorkflowValidationError
from models.execution import ExecutionStatus, WorkflowExecution
from models.workflow import TriggerType, WorkflowCreate, WorkflowUpdate
from conftest import OWNER


def _definition(**overrides):
    data = {
        "name": "  Urgent issues  ",
        "trigger_conditions": [{"field": "category", "operator": "equals", "value": "urgent_issue"}],
        "actions": [
            {"type": "send_auto_reply", "config": {"template": "On it"}},
            {"type": "create_ticket", "config": {"queue": "field-service"}, "delay_minutes": 2},
        ],
        "active": True,
        "retry_policy": {"max_retries": 4, "retry_delay_seconds": 120, "backoff": "exponential"},
    }
    data.update(overrides)
    return WorkflowCreate(**data)


def test_create_then_read_round_trips(services):
    store = services.workflow_store
    created = store.create(OWNER, _definition())

    loaded = store.get(created.id, OWNER)

    assert loaded.name == "Urgent issues"
    assert loaded.actions == created.actions
    assert [a.delay_minutes for a in loaded.actions] == [0, 2]
    assert loaded.trigger_conditions == created.trigger_conditions
    assert loaded.retry_policy.max_retries == 4
    assert loaded.retry_policy.backoff.value == "exponential"
    assert loaded.version == 1


def test_defaults_inactive(services):
    created = services.workflow_store.create(OWNER, _definition(active=False))
    assert created.active is False
    assert WorkflowCreate(name="x", actions=[{"type": "notify"}]).active is False


def test_mapping_conditions_are_normalized(services):
    created = services.workflow_store.create(
        OWNER, _definition(trigger_conditions={"category": "billing", "priority": "high"})
    )
    assert created.condition_map() == {"category": "billing", "priority": "high"}


@pytest.mark.parametrize("conditions", [
    {"category": "weather"},
    {"priority": "critical"},
    {"sender": "not-an-address"},
    [
        {"field": "category", "value": "billing"},
        {"field": "category", "value": "sales"},
    ],
])
def test_unsatisfiable_conditions_are_rejected(services, conditions):
    with pytest.raises(WorkflowValidationError):
        services.workflow_store.create(OWNER, _definition(trigger_conditions=conditions))


def test_conditions_require_email_trigger(services):
    with pytest.raises(WorkflowValidationError):
        services.workflow_store.create(OWNER, _definition(trigger_type=TriggerType.MANUAL))


def test_broken_template_is_rejected_on_create_and_update(services):
    broken = [{"type": "send_auto_reply", "config": {"template": "Hi {{ name", "subject": "ok"}}]
    with pytest.raises(WorkflowValidationError) as exc:
        services.workflow_store.create(OWNER, _definition(actions=broken))
    assert list(exc.value.details["errors"]) == ["template"]

    created = services.workflow_store.create(OWNER, _definition())
    with pytest.raises(WorkflowValidationError):
        services.workflow_store.update(created.id, OWNER, WorkflowUpdate(actions=broken))
    assert services.workflow_store.get(created.id, OWNER).version == 1


def test_workflow_requires_an_action():
    with pytest.raises(ValueError):
        WorkflowCreate(name="empty", actions=[])


def test_owner_isolation(services):
    created = services.workflow_store.create(OWNER, _definition())
    with pytest.raises(NotFoundError):
        services.workflow_store.get(created.id, "intruder@example.com")


def test_update_bumps_version(services):
    store = services.workflow_store
    created = store.create(OWNER, _definition())

    updated = store.update(created.id, OWNER, WorkflowUpdate(name="Renamed", active=False))

    assert updated.name == "Renamed"
    assert updated.active is False
    assert updated.version == 2
    assert updated.actions == created.actions


def test_delete_guard(services):
    store = services.workflow_store
    workflow = store.create(OWNER, _definition())
    services.execution_store.create(WorkflowExecution(
        id="exec-1", workflow_id=workflow.id, owner_id=OWNER, actions=workflow.actions,
    ))
    services.execution_store.transition("exec-1", ExecutionStatus.RUNNING)

    with pytest.raises(ConflictError):
        store.delete(workflow.id, OWNER)

    services.execution_store.transition("exec-1", ExecutionStatus.COMPLETED)
    store.delete(workflow.id, OWNER)
    with pytest.raises(NotFoundError):
        store.get(workflow.id, OWNER)


def test_list_filters(services):
    store = services.workflow_store
    store.create(OWNER, _definition(name="urgent"))
    store.create(OWNER, _definition(name="billing", trigger_conditions={"category": "billing"}, active=False))
    store.create(OWNER, _definition(name="manual", trigger_type=TriggerType.MANUAL, trigger_conditions=[]))
    store.create("other@example.com", _definition(name="not mine"))

    items, total = store.list(OWNER)
    assert total == 3

    items, _ = store.list(OWNER, active=False)
    assert [w.name for w in items] == ["billing"]

    items, _ = store.list(OWNER, trigger_type=TriggerType.MANUAL)
    assert [w.name for w in items] == ["manual"]

    items, _ = store.list(OWNER, category="urgent_issue")
    assert [w.name for w in items] == ["urgent"]

    items, total = store.list(OWNER, page=2, page_size=2)
    assert total == 3
    assert len(items) == 1

    assert [w.name for w in store.list_active(OWNER)] == ["urgent", "manual"]


def test_category_filter_pages_in_the_database(services):
    store = services.workflow_store
    for n in range(5):
        store.create(OWNER, _definition(name=f"billing {n}", trigger_conditions={"category": "billing"}))
    store.create(OWNER, _definition(name="urgent"))

    items, total = store.list(OWNER, category="billing", page=2, page_size=2)

    assert total == 5
    assert len(items) == 2
    assert all(w.condition_map()["category"] == "billing" for w in items)


def test_category_column_follows_condition_updates(services):
    store = services.workflow_store
    created = store.create(OWNER, _definition())

    store.update(created.id, OWNER, WorkflowUpdate(trigger_conditions={"category": "sales"}))

    assert store.list(OWNER, category="urgent_issue") == ([], 0)
    items, total = store.list(OWNER, category="sales")
    assert total == 1 and items[0].id == created.id
