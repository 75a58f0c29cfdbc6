import pytest

from errors import WorkflowValidationError
from models.email import InboundEmail
from models.execution import ExecutionStatus
from conftest import OWNER

NOTIFY = {"type": "notify", "config": {"to": "oncall@acme-spas.com", "template": "{{ category }}: {{ subject }}"}}
REPLY = {"type": "send_auto_reply", "config": {"template": "Hi, we received: {{ subject }}"}}


@pytest.mark.asyncio
async def test_fan_out_to_every_matching_workflow(services, make_workflow, urgent_envelope, sender):
    make_workflow(name="reply", actions=[REPLY])
    make_workflow(name="page on-call", actions=[NOTIFY], conditions={"category": "urgent_issue", "priority": "high"})
    make_workflow(name="billing", actions=[NOTIFY], conditions={"category": "billing"})

    result = await services.pipeline.ingest(urgent_envelope)

    assert result.created
    assert result.email.category == "urgent_issue"
    assert result.email.from_address == "customer@example.com"
    assert len(result.execution_ids) == 2

    for execution_id in result.execution_ids:
        final = await services.engine.wait(execution_id)
        assert final.status == ExecutionStatus.COMPLETED
        assert final.email_id == result.email.id

    recipients = sorted(m["to_email"] for m in sender.sent)
    assert recipients == ["customer@example.com", "oncall@acme-spas.com"]


@pytest.mark.asyncio
async def test_redelivery_creates_no_second_email_or_execution(services, make_workflow, urgent_envelope):
    make_workflow(actions=[REPLY])

    first = await services.pipeline.ingest(urgent_envelope)
    await services.engine.wait(first.execution_ids[0])
    second = await services.pipeline.ingest(urgent_envelope)

    assert not second.created
    assert second.email.id == first.email.id
    assert second.execution_ids == []
    assert services.execution_store.list(owner_id=OWNER).total == 1


@pytest.mark.asyncio
async def test_owner_defaults_to_addressee(services, make_workflow):
    make_workflow(actions=[REPLY], owner_id="sales@acme-spas.com", conditions={})
    envelope = InboundEmail(**{"from": "a@example.com", "to": "Sales@Acme-Spas.com", "subject": "Price list"})

    result = await services.pipeline.ingest(envelope)

    assert result.email.owner_id == "sales@acme-spas.com"
    assert len(result.execution_ids) == 1
    await services.engine.wait(result.execution_ids[0])


@pytest.mark.asyncio
async def test_missing_owner_is_rejected(services):
    envelope = InboundEmail(**{"from": "a@example.com", "subject": "Hello"})
    with pytest.raises(WorkflowValidationError):
        await services.pipeline.ingest(envelope)


def test_display_names_are_stripped_from_envelope_addresses():
    envelope = InboundEmail(**{"from": "Jane Doe <Jane.Doe@Example.com>", "to": "Support <support@acme-spas.com>"})

    assert envelope.from_address == "jane.doe@example.com"
    assert envelope.to == "support@acme-spas.com"
