from models.email import Email, Priority
from models.workflow import TriggerType, Workflow
from executor.trigger_matcher import TriggerMatcher

ACTIONS = [{"type": "notify", "config": {"to": "ops@example.com"}}]


def _workflow(workflow_id, conditions, active=True, trigger_type=TriggerType.EMAIL_RECEIVED):
    return Workflow(
        id=workflow_id,
        owner_id="owner@example.com",
        name=workflow_id,
        trigger_type=trigger_type,
        trigger_conditions=conditions,
        actions=ACTIONS,
        active=active,
    )


def _email(**overrides):
    data = {
        "id": "email-1",
        "owner_id": "owner@example.com",
        "from_address": "vip@customer.com",
        "category": "urgent_issue",
        "priority": Priority.HIGH,
        "confidence_score": 0.9,
    }
    data.update(overrides)
    return Email(**data)


def test_returns_exactly_the_satisfied_subset():
    workflows = [
        _workflow("urgent", {"category": "urgent_issue"}),
        _workflow("urgent-high", {"category": "urgent_issue", "priority": "high"}),
        _workflow("billing", {"category": "billing"}),
        _workflow("low", {"priority": "low"}),
        _workflow("catch-all", {}),
    ]

    matched = TriggerMatcher().match(_email(), workflows)

    assert [w.id for w, _ in matched] == ["urgent", "urgent-high", "catch-all"]


def test_no_duplicates_on_repeat():
    workflow = _workflow("urgent", {"category": "urgent_issue"})
    matched = TriggerMatcher().match(_email(), [workflow, workflow])
    assert len(matched) == 1


def test_inactive_and_non_email_workflows_never_fire():
    workflows = [
        _workflow("inactive", {"category": "urgent_issue"}, active=False),
        _workflow("manual", [], trigger_type=TriggerType.MANUAL),
    ]
    assert TriggerMatcher().match(_email(), workflows) == []


def test_sender_matches_case_insensitively():
    workflow = _workflow("vip", {"sender": "VIP@Customer.com"})
    assert TriggerMatcher().matches(workflow, _email())
    assert not TriggerMatcher().matches(workflow, _email(from_address="other@customer.com"))


def test_action_snapshot_is_a_copy():
    workflow = _workflow("urgent", {"category": "urgent_issue"})
    (_, actions), = TriggerMatcher().match(_email(), [workflow])
    actions[0].config["to"] = "changed@example.com"
    assert workflow.actions[0].config["to"] == "ops@example.com"
