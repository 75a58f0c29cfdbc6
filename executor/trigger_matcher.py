from typing import List, Tuple
import logging

from models.email import Email
from models.workflow import Action, ConditionField, TriggerType, Workflow

logger = logging.getLogger("automation_service")


class TriggerMatcher:
    """
    Decides which active workflows fire for a classified email.

    A workflow fires when its trigger type is email_received and every
    condition holds by exact equality. Stateless: duplicate protection is
    the execution store's (email_id, workflow_id) uniqueness.
    """

    @staticmethod
    def _email_value(email: Email, field: ConditionField) -> str:
        if field == ConditionField.CATEGORY:
            return email.category
        if field == ConditionField.PRIORITY:
            return email.priority.value
        return email.from_address

    def matches(self, workflow: Workflow, email: Email) -> bool:
        if not workflow.active or workflow.trigger_type != TriggerType.EMAIL_RECEIVED:
            return False
        for condition in workflow.trigger_conditions:
            expected = condition.value
            actual = self._email_value(email, condition.field)
            if condition.field == ConditionField.SENDER:
                expected, actual = expected.lower(), (actual or "").lower()
            if actual != expected:
                return False
        return True

    def match(self, email: Email, workflows: List[Workflow]) -> List[Tuple[Workflow, List[Action]]]:
        """Returns (workflow, action snapshot) pairs in the order the workflows were given."""
        matched = []
        seen = set()
        for workflow in workflows:
            if workflow.id in seen:
                continue
            seen.add(workflow.id)
            if self.matches(workflow, email):
                matched.append((workflow, [a.model_copy(deep=True) for a in workflow.actions]))

        logger.info(f"Email {email.id}: {len(matched)} of {len(workflows)} active workflow(s) matched")
        return matched
