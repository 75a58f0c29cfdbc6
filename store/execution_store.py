"""
Durable log of workflow executions.

Every write is a single conditional UPDATE (or INSERT) whose WHERE clause
re-validates the state it expects, so concurrent writers cannot lose
updates and no write ever moves a terminal execution back.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from errors import ConflictError, NotFoundError
from models.execution import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AttemptLogEntry,
    ExecutionPage,
    ExecutionStatus,
    WorkflowExecution,
)
from models.workflow import Action, RetryPolicy, TriggerType
from store.database import AttemptRow, Database, ExecutionRow
from utils.idempotency import IdempotencyKey
from utils.time_utils import utcnow

logger = logging.getLogger("automation_service")

NON_TERMINAL = [ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value]
MAX_PAGE_SIZE = 200


def _to_model(row: ExecutionRow) -> WorkflowExecution:
    return WorkflowExecution(
        id=row.id,
        workflow_id=row.workflow_id,
        owner_id=row.owner_id,
        email_id=row.email_id,
        trigger_type=TriggerType(row.trigger_type),
        trigger_data=row.trigger_data or {},
        actions=[Action(**a) for a in row.actions],
        retry_policy=RetryPolicy(**row.retry_policy),
        status=ExecutionStatus(row.status),
        action_cursor=row.action_cursor,
        attempt_count=row.attempt_count,
        next_eligible_at=row.next_eligible_at,
        last_action_completed_at=row.last_action_completed_at,
        dispatch_token=row.dispatch_token,
        lease_until=row.lease_until,
        awaiting_callback=row.awaiting_callback,
        callback_deadline=row.callback_deadline,
        callback_timeout_seconds=row.callback_timeout_seconds,
        cancel_requested=row.cancel_requested,
        result=row.result,
        error_category=row.error_category,
        error_message=row.error_message,
        created_at=row.created_at,
        started_at=row.started_at,
        finished_at=row.finished_at,
    )


class ExecutionStore:
    def __init__(self, db: Database):
        self.db = db

    # Creation and reads

    def create(self, execution: WorkflowExecution) -> Optional[WorkflowExecution]:
        """
        Inserts a new pending execution. Returns None when the
        (email_id, workflow_id) pair already has one.
        """
        row = ExecutionRow(
            id=execution.id,
            workflow_id=execution.workflow_id,
            owner_id=execution.owner_id,
            email_id=execution.email_id,
            trigger_type=execution.trigger_type.value,
            trigger_data=execution.trigger_data,
            actions=[a.model_dump(mode="json") for a in execution.actions],
            retry_policy=execution.retry_policy.model_dump(mode="json"),
            status=ExecutionStatus.PENDING.value,
            action_cursor=0,
            attempt_count=0,
            callback_timeout_seconds=execution.callback_timeout_seconds,
            created_at=execution.created_at,
            updated_at=utcnow(),
        )
        try:
            with self.db.session() as session:
                session.add(row)
        except IntegrityError:
            logger.info(
                f"Execution for email {execution.email_id} / workflow {execution.workflow_id} already exists. Skipping."
            )
            return None
        return _to_model(row)

    def get(self, execution_id: str, owner_id: Optional[str] = None) -> WorkflowExecution:
        with self.db.session() as session:
            row = session.get(ExecutionRow, execution_id)
            if row is None or (owner_id is not None and row.owner_id != owner_id):
                raise NotFoundError(f"Execution {execution_id} not found")
            return _to_model(row)

    def find(self, execution_id: str) -> Optional[WorkflowExecution]:
        with self.db.session() as session:
            row = session.get(ExecutionRow, execution_id)
            return _to_model(row) if row is not None else None

    def list(
        self,
        workflow_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> ExecutionPage:
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        conditions = []
        if workflow_id is not None:
            conditions.append(ExecutionRow.workflow_id == workflow_id)
        if owner_id is not None:
            conditions.append(ExecutionRow.owner_id == owner_id)
        if status is not None:
            conditions.append(ExecutionRow.status == ExecutionStatus(status).value)
        if created_after is not None:
            conditions.append(ExecutionRow.created_at >= created_after)
        if created_before is not None:
            conditions.append(ExecutionRow.created_at <= created_before)

        with self.db.session() as session:
            total = session.scalar(select(func.count()).select_from(ExecutionRow).where(*conditions))
            rows = session.scalars(
                select(ExecutionRow)
                .where(*conditions)
                .order_by(ExecutionRow.created_at.desc(), ExecutionRow.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
            items = [_to_model(r) for r in rows]

        return ExecutionPage(items=items, total=total or 0, page=page, page_size=page_size)

    def list_resumable(self, due_before: Optional[datetime] = None) -> List[str]:
        """
        Ids of every non-terminal execution. With `due_before`, only those
        eligible by then whose local dispatch lease (if any) has run out.
        """
        stmt = select(ExecutionRow.id).where(ExecutionRow.status.in_(NON_TERMINAL))
        if due_before is not None:
            stmt = stmt.where(
                (ExecutionRow.next_eligible_at.is_(None)) | (ExecutionRow.next_eligible_at <= due_before),
                (ExecutionRow.lease_until.is_(None)) | (ExecutionRow.lease_until <= due_before),
            )
        with self.db.session() as session:
            return list(session.scalars(stmt.order_by(ExecutionRow.created_at)))

    def list_attempts(self, execution_id: str) -> List[AttemptLogEntry]:
        with self.db.session() as session:
            rows = session.scalars(
                select(AttemptRow).where(AttemptRow.execution_id == execution_id).order_by(AttemptRow.id)
            ).all()
            return [
                AttemptLogEntry(
                    id=r.id,
                    execution_id=r.execution_id,
                    action_cursor=r.action_cursor,
                    attempt=r.attempt,
                    error_category=r.error_category,
                    error_message=r.error_message,
                    created_at=r.created_at,
                )
                for r in rows
            ]

    # State transitions

    def transition(self, execution_id: str, to_status: ExecutionStatus, **fields: Any) -> bool:
        """
        Moves an execution to `to_status` only if it currently sits in an
        allowed predecessor state. Returns False when the guard rejects it.
        """
        allowed_from = [s.value for s in ALLOWED_TRANSITIONS.get(to_status, set())]
        if not allowed_from:
            return False

        now = utcnow()
        values = dict(fields)
        values["status"] = to_status.value
        values["updated_at"] = now
        if to_status == ExecutionStatus.RUNNING:
            values.setdefault("started_at", now)
        if to_status in TERMINAL_STATUSES:
            values.setdefault("finished_at", now)
            values.setdefault("awaiting_callback", False)
            values.setdefault("callback_deadline", None)
            values.setdefault("next_eligible_at", None)
            values.setdefault("lease_until", None)

        with self.db.session() as session:
            res = session.execute(
                update(ExecutionRow)
                .where(ExecutionRow.id == execution_id, ExecutionRow.status.in_(allowed_from))
                .values(**values)
            )
            changed = res.rowcount == 1

        if changed:
            logger.info(f"Execution {execution_id} -> {to_status.value}")
        else:
            logger.debug(f"Execution {execution_id}: transition to {to_status.value} rejected by state guard")
        return changed

    def claim_dispatch(
        self,
        execution_id: str,
        action_cursor: int,
        attempt: int,
        awaiting_callback: bool = False,
        callback_deadline: Optional[datetime] = None,
        lease_until: Optional[datetime] = None,
    ) -> bool:
        """
        Claims the right to dispatch (action_cursor, attempt). Succeeds at
        most once per pair, and never after the cursor has advanced.
        `lease_until` marks how long the claimant owns an in-progress local
        dispatch; until then no other worker treats it as interrupted.
        """
        token = IdempotencyKey.dispatch_token(action_cursor, attempt)
        with self.db.session() as session:
            res = session.execute(
                update(ExecutionRow)
                .where(
                    ExecutionRow.id == execution_id,
                    ExecutionRow.status == ExecutionStatus.RUNNING.value,
                    ExecutionRow.action_cursor == action_cursor,
                    ExecutionRow.attempt_count == attempt,
                    (ExecutionRow.dispatch_token.is_(None)) | (ExecutionRow.dispatch_token != token),
                )
                .values(
                    dispatch_token=token,
                    awaiting_callback=awaiting_callback,
                    callback_deadline=callback_deadline,
                    lease_until=lease_until,
                    next_eligible_at=None,
                    updated_at=utcnow(),
                )
            )
            return res.rowcount == 1

    def complete_action(
        self,
        execution_id: str,
        action_cursor: int,
        action_result: Dict[str, Any],
        completed_at: Optional[datetime] = None,
    ) -> bool:
        """Advances the cursor past `action_cursor` and appends its result."""
        completed_at = completed_at or utcnow()
        with self.db.session() as session:
            row = session.get(ExecutionRow, execution_id)
            if row is None or row.status != ExecutionStatus.RUNNING.value or row.action_cursor != action_cursor:
                return False

            result = dict(row.result or {})
            results = list(result.get("actions", []))
            results.append(action_result)
            result["actions"] = results

            res = session.execute(
                update(ExecutionRow)
                .where(
                    ExecutionRow.id == execution_id,
                    ExecutionRow.status == ExecutionStatus.RUNNING.value,
                    ExecutionRow.action_cursor == action_cursor,
                )
                .values(
                    action_cursor=action_cursor + 1,
                    attempt_count=0,
                    dispatch_token=None,
                    lease_until=None,
                    awaiting_callback=False,
                    callback_deadline=None,
                    next_eligible_at=None,
                    last_action_completed_at=completed_at,
                    result=result,
                    updated_at=utcnow(),
                )
            )
            return res.rowcount == 1

    def record_failure(
        self,
        execution_id: str,
        action_cursor: int,
        attempt: int,
        error_category: str,
        error_message: str,
        next_eligible_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Counts one failed attempt of the current action and appends it to
        the attempt log. Returns the new attempt_count, or None if the
        execution moved on meanwhile.
        """
        with self.db.session() as session:
            res = session.execute(
                update(ExecutionRow)
                .where(
                    ExecutionRow.id == execution_id,
                    ExecutionRow.status == ExecutionStatus.RUNNING.value,
                    ExecutionRow.action_cursor == action_cursor,
                    ExecutionRow.attempt_count == attempt,
                )
                .values(
                    attempt_count=attempt + 1,
                    dispatch_token=None,
                    lease_until=None,
                    awaiting_callback=False,
                    callback_deadline=None,
                    next_eligible_at=next_eligible_at,
                    error_category=error_category,
                    error_message=error_message,
                    updated_at=utcnow(),
                )
            )
            if res.rowcount != 1:
                return None

            session.add(AttemptRow(
                execution_id=execution_id,
                action_cursor=action_cursor,
                attempt=attempt + 1,
                error_category=error_category,
                error_message=error_message,
            ))
        return attempt + 1

    def set_next_eligible(self, execution_id: str, action_cursor: int, next_eligible_at: Optional[datetime]) -> bool:
        with self.db.session() as session:
            res = session.execute(
                update(ExecutionRow)
                .where(
                    ExecutionRow.id == execution_id,
                    ExecutionRow.status == ExecutionStatus.RUNNING.value,
                    ExecutionRow.action_cursor == action_cursor,
                )
                .values(next_eligible_at=next_eligible_at, updated_at=utcnow())
            )
            return res.rowcount == 1

    def request_cancel(self, execution_id: str, owner_id: Optional[str] = None) -> WorkflowExecution:
        """Flags a pending/running execution for cooperative cancellation."""
        with self.db.session() as session:
            row = session.get(ExecutionRow, execution_id)
            if row is None or (owner_id is not None and row.owner_id != owner_id):
                raise NotFoundError(f"Execution {execution_id} not found")

            res = session.execute(
                update(ExecutionRow)
                .where(ExecutionRow.id == execution_id, ExecutionRow.status.in_(NON_TERMINAL))
                .values(cancel_requested=True, updated_at=utcnow())
            )
            if res.rowcount != 1:
                raise ConflictError(f"Execution {execution_id} is already {row.status}")

        logger.info(f"Cancellation requested for execution {execution_id}")
        return self.get(execution_id)
