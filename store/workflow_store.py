import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select

from errors import ConflictError, NotFoundError, WorkflowValidationError
from models.email import Priority
from models.execution import ExecutionStatus
from models.workflow import (
    Action,
    ConditionField,
    RetryPolicy,
    TriggerCondition,
    TriggerType,
    Workflow,
    WorkflowCreate,
    WorkflowUpdate,
)
from executor.template_renderer import TemplateRenderer
from store.database import Database, ExecutionRow, WorkflowRow
from utils.email_validator_lite import is_valid_address
from utils.time_utils import utcnow

logger = logging.getLogger("automation_service")

NON_TERMINAL = (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value)


def _to_model(row: WorkflowRow) -> Workflow:
    return Workflow(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        description=row.description,
        trigger_type=TriggerType(row.trigger_type),
        trigger_conditions=[TriggerCondition(**c) for c in (row.trigger_conditions or [])],
        actions=[Action(**a) for a in row.actions],
        active=row.active,
        retry_policy=RetryPolicy(
            max_retries=row.max_retries,
            retry_delay_seconds=row.retry_delay_seconds,
            backoff=row.backoff,
        ),
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _dump_conditions(conditions: Iterable[TriggerCondition]) -> List[Dict[str, Any]]:
    return [c.model_dump(mode="json") for c in conditions]


def _category_of(conditions: Iterable[TriggerCondition]) -> Optional[str]:
    for condition in conditions:
        if condition.field == ConditionField.CATEGORY:
            return condition.value
    return None


def _dump_actions(actions: Iterable[Action]) -> List[Dict[str, Any]]:
    return [a.model_dump(mode="json") for a in actions]


class WorkflowStore:
    """
    Per-owner CRUD repository of workflow definitions.

    `categories` is the classifier's output vocabulary; conditions naming
    anything outside it are unreachable and rejected.
    """

    def __init__(self, db: Database, categories: Iterable[str]):
        self.db = db
        self.categories = list(categories)
        self.renderer = TemplateRenderer()

    # Validation

    def validate_conditions(self, trigger_type: TriggerType, conditions: List[TriggerCondition]) -> None:
        seen: Dict[str, str] = {}
        for condition in conditions:
            field = condition.field.value
            if field in seen and seen[field] != condition.value:
                raise WorkflowValidationError(
                    f"Conditions require {field} to equal both {seen[field]!r} and {condition.value!r}",
                    {"field": field},
                )
            seen[field] = condition.value

            if condition.field == ConditionField.CATEGORY and condition.value not in self.categories:
                raise WorkflowValidationError(
                    f"Unknown category {condition.value!r}; expected one of {self.categories}",
                    {"field": field},
                )
            if condition.field == ConditionField.PRIORITY and condition.value not in {p.value for p in Priority}:
                raise WorkflowValidationError(
                    f"Unknown priority {condition.value!r}",
                    {"field": field},
                )
            if condition.field == ConditionField.SENDER and not is_valid_address(condition.value):
                raise WorkflowValidationError(
                    f"Sender condition {condition.value!r} is not a valid email address",
                    {"field": field},
                )

        if conditions and trigger_type != TriggerType.EMAIL_RECEIVED:
            raise WorkflowValidationError(
                f"Trigger conditions only apply to {TriggerType.EMAIL_RECEIVED.value} workflows",
                {"trigger_type": trigger_type.value},
            )

    def validate_actions(self, actions: List[Action]) -> None:
        for index, action in enumerate(actions):
            errors = self.renderer.invalid_templates(action.config)
            if errors:
                raise WorkflowValidationError(
                    f"Action {index} ({action.type.value}) has an invalid template",
                    {"action": index, "errors": errors},
                )

    # CRUD

    def create(self, owner_id: str, definition: WorkflowCreate) -> Workflow:
        self.validate_conditions(definition.trigger_type, definition.trigger_conditions)
        self.validate_actions(definition.actions)
        now = utcnow()
        row = WorkflowRow(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            name=definition.name,
            description=definition.description,
            trigger_type=definition.trigger_type.value,
            trigger_conditions=_dump_conditions(definition.trigger_conditions),
            category=_category_of(definition.trigger_conditions),
            actions=_dump_actions(definition.actions),
            active=definition.active,
            max_retries=definition.retry_policy.max_retries,
            retry_delay_seconds=definition.retry_policy.retry_delay_seconds,
            backoff=definition.retry_policy.backoff.value,
            version=1,
            created_at=now,
            updated_at=now,
        )
        with self.db.session() as session:
            session.add(row)
        logger.info(f"Workflow {row.id} created for owner {owner_id} ({len(definition.actions)} actions)")
        return _to_model(row)

    def get(self, workflow_id: str, owner_id: Optional[str] = None) -> Workflow:
        with self.db.session() as session:
            row = session.get(WorkflowRow, workflow_id)
            if row is None or (owner_id is not None and row.owner_id != owner_id):
                raise NotFoundError(f"Workflow {workflow_id} not found")
            return _to_model(row)

    def update(self, workflow_id: str, owner_id: str, changes: WorkflowUpdate) -> Workflow:
        with self.db.session() as session:
            row = session.get(WorkflowRow, workflow_id)
            if row is None or row.owner_id != owner_id:
                raise NotFoundError(f"Workflow {workflow_id} not found")

            if changes.trigger_conditions is not None:
                self.validate_conditions(TriggerType(row.trigger_type), changes.trigger_conditions)
                row.trigger_conditions = _dump_conditions(changes.trigger_conditions)
                row.category = _category_of(changes.trigger_conditions)
            if changes.name is not None:
                row.name = changes.name.strip()
            if changes.description is not None:
                row.description = changes.description
            if changes.actions is not None:
                self.validate_actions(changes.actions)
                # in-flight executions keep the snapshot they were dispatched with
                row.actions = _dump_actions(changes.actions)
            if changes.active is not None:
                row.active = changes.active
            if changes.retry_policy is not None:
                row.max_retries = changes.retry_policy.max_retries
                row.retry_delay_seconds = changes.retry_policy.retry_delay_seconds
                row.backoff = changes.retry_policy.backoff.value

            row.version += 1
            row.updated_at = utcnow()
            session.flush()
            workflow = _to_model(row)

        logger.info(f"Workflow {workflow_id} updated to version {workflow.version}")
        return workflow

    def delete(self, workflow_id: str, owner_id: str) -> None:
        """Deletes a workflow unless one of its executions is still pending or running."""
        with self.db.session() as session:
            row = session.get(WorkflowRow, workflow_id)
            if row is None or row.owner_id != owner_id:
                raise NotFoundError(f"Workflow {workflow_id} not found")

            in_flight = session.scalar(
                select(func.count())
                .select_from(ExecutionRow)
                .where(ExecutionRow.workflow_id == workflow_id, ExecutionRow.status.in_(NON_TERMINAL))
            )
            if in_flight:
                raise ConflictError(
                    f"Workflow {workflow_id} has {in_flight} execution(s) in progress",
                    {"in_flight_executions": in_flight},
                )
            session.delete(row)
        logger.info(f"Workflow {workflow_id} deleted")

    def list(
        self,
        owner_id: str,
        active: Optional[bool] = None,
        trigger_type: Optional[TriggerType] = None,
        category: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[Workflow], int]:
        filters = [WorkflowRow.owner_id == owner_id]
        if active is not None:
            filters.append(WorkflowRow.active == active)
        if trigger_type is not None:
            filters.append(WorkflowRow.trigger_type == trigger_type.value)
        if category is not None:
            filters.append(WorkflowRow.category == category)

        page = max(1, page)
        page_size = max(1, min(page_size, 200))
        stmt = (
            select(WorkflowRow)
            .where(*filters)
            .order_by(WorkflowRow.created_at, WorkflowRow.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        with self.db.session() as session:
            total = session.scalar(select(func.count()).select_from(WorkflowRow).where(*filters))
            workflows = [_to_model(r) for r in session.scalars(stmt)]
        return workflows, total

    def list_active(self, owner_id: str) -> List[Workflow]:
        stmt = (
            select(WorkflowRow)
            .where(WorkflowRow.owner_id == owner_id, WorkflowRow.active.is_(True))
            .order_by(WorkflowRow.created_at, WorkflowRow.id)
        )
        with self.db.session() as session:
            return [_to_model(r) for r in session.scalars(stmt)]
