import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from classifier.base import BaseClassifier
from errors import WorkflowValidationError
from executor.execution_engine import ExecutionEngine
from executor.trigger_matcher import TriggerMatcher
from models.email import Classification, Email, InboundEmail
from store.email_store import EmailStore
from store.workflow_store import WorkflowStore

logger = logging.getLogger("automation_service")


class IngestResult(BaseModel):
    email: Email
    created: bool
    execution_ids: List[str] = Field(default_factory=list)


class EmailPipeline:
    """Classify, persist, match and trigger for one inbound email."""

    def __init__(
        self,
        classifier: BaseClassifier,
        email_store: EmailStore,
        workflow_store: WorkflowStore,
        matcher: TriggerMatcher,
        engine: ExecutionEngine,
    ):
        self.classifier = classifier
        self.emails = email_store
        self.workflows = workflow_store
        self.matcher = matcher
        self.engine = engine

    def classify(self, envelope: InboundEmail) -> Classification:
        return self.classifier.classify(envelope.from_address, envelope.subject, envelope.body)

    async def ingest(self, envelope: InboundEmail, owner_id: Optional[str] = None) -> IngestResult:
        owner_id = (owner_id or envelope.to or "").strip().lower()
        if not owner_id:
            raise WorkflowValidationError("Cannot determine the mailbox owner: no owner id and no 'to' address")

        classification = self.classify(envelope)
        email, created = self.emails.save(owner_id, envelope, classification)
        if not created:
            logger.info(f"Email {email.id} (message {email.message_id}) already ingested")

        # re-matching a known email is safe: (email, workflow) pairs are unique
        matches = self.matcher.match(email, self.workflows.list_active(owner_id))
        execution_ids = []
        for workflow, actions in matches:
            execution = await self.engine.trigger(workflow, email=email, actions=actions)
            if execution is not None:
                execution_ids.append(execution.id)

        logger.info(
            f"Ingested email {email.id} for {owner_id}: {email.category}/{email.priority.value} "
            f"({email.confidence_score:.2f}), {len(execution_ids)} execution(s) triggered"
        )
        return IngestResult(email=email, created=created, execution_ids=execution_ids)
