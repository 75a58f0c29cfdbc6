import asyncio
import logging
import traceback
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from errors import DispatchError, ExecutionTimeoutError, FatalActionError, NotFoundError
from models.email import Email
from models.execution import (
    ActionOutcome,
    ExecutionStatus,
    OutcomeStatus,
    WorkflowExecution,
)
from models.webhook import WebhookEvent
from models.workflow import Action, TriggerType, Workflow
from store.email_store import EmailStore
from store.execution_store import ExecutionStore
from store.webhook_event_store import WebhookEventStore
from utils.idempotency import IdempotencyKey
from utils.retry import RetryManager
from utils.time_utils import seconds_until, utcnow

from .action_handlers import ActionHandlers

logger = logging.getLogger("automation_service")

FATAL_CALLBACK_STATUSES = ("fatal", "rejected")


class ExecutionEngine:
    """
    Drives workflow executions through their action lists.

    All progress lives on the execution row (cursor, attempt count,
    eligibility time, dispatch claim, callback deadline), so any engine
    instance can pick an execution up where another left it. Each running
    execution is one asyncio task; every suspension is an await point.
    """

    def __init__(
        self,
        execution_store: ExecutionStore,
        email_store: EmailStore,
        webhook_events: WebhookEventStore,
        handlers: ActionHandlers,
        default_callback_timeout_seconds: int = 300,
        retry_jitter: bool = False,
        poll_interval_seconds: float = 1.0,
        dispatch_lease_seconds: int = 300,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.executions = execution_store
        self.emails = email_store
        self.webhook_events = webhook_events
        self.handlers = handlers
        self.default_callback_timeout_seconds = default_callback_timeout_seconds
        self.retry_jitter = retry_jitter
        self.poll_interval_seconds = poll_interval_seconds
        self.dispatch_lease_seconds = dispatch_lease_seconds
        self.now = now
        self.sleep = sleep

        self._tasks: Dict[str, asyncio.Task] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}

    # Entry points

    async def trigger(
        self,
        workflow: Workflow,
        email: Optional[Email] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[int] = None,
        actions: Optional[List[Action]] = None,
        trigger_type: Optional[TriggerType] = None,
    ) -> Optional[WorkflowExecution]:
        """
        Creates a pending execution with a snapshot of the workflow's actions
        and retry policy, then starts it. Returns None when this email already
        triggered this workflow.
        """
        execution = WorkflowExecution(
            id=str(uuid.uuid4()),
            workflow_id=workflow.id,
            owner_id=workflow.owner_id,
            email_id=email.id if email else None,
            trigger_type=trigger_type or (TriggerType.EMAIL_RECEIVED if email else TriggerType.MANUAL),
            trigger_data=trigger_data or {},
            actions=actions if actions is not None else [a.model_copy(deep=True) for a in workflow.actions],
            retry_policy=workflow.retry_policy.model_copy(),
            callback_timeout_seconds=timeout_seconds or self.default_callback_timeout_seconds,
            created_at=self.now(),
        )
        created = self.executions.create(execution)
        if created is None:
            return None

        logger.info(f"Execution {created.id} created for workflow {workflow.id} ({len(created.actions)} actions)")
        self.start(created.id)
        return created

    def start(self, execution_id: str) -> asyncio.Task:
        """Starts driving an execution unless a task for it is already running."""
        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self._run(execution_id), name=f"execution-{execution_id}")
        self._tasks[execution_id] = task
        task.add_done_callback(lambda t, eid=execution_id: self._forget(eid, t))
        return task

    def _forget(self, execution_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(execution_id) is task:
            del self._tasks[execution_id]
            self._wakeups.pop(execution_id, None)

    def is_running(self, execution_id: str) -> bool:
        task = self._tasks.get(execution_id)
        return task is not None and not task.done()

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> WorkflowExecution:
        """Waits for the execution's task to finish, up to `timeout` seconds, then returns its state."""
        task = self._tasks.get(execution_id)
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.TimeoutError:
                logger.info(f"Execution {execution_id} still running after {timeout}s")
        return self.executions.get(execution_id)

    async def recover(self) -> int:
        """Resumes every non-terminal execution from its persisted state."""
        return self._start_all(self.executions.list_resumable())

    async def resume_due(self) -> int:
        """Resumes non-terminal executions that are eligible now and have no task in this process."""
        return self._start_all(self.executions.list_resumable(due_before=self.now()))

    def _start_all(self, execution_ids: List[str]) -> int:
        started = 0
        for execution_id in execution_ids:
            if not self.is_running(execution_id):
                self.start(execution_id)
                started += 1
        if started:
            logger.info(f"Resumed {started} execution(s)")
        return started

    def wake(self, execution_id: str) -> None:
        """
        Signals that something changed for this execution (callback recorded,
        cancellation requested). Starts a task when none is running here.
        """
        if self.is_running(execution_id):
            self._wakeup(execution_id).set()
        else:
            execution = self.executions.find(execution_id)
            if execution is not None and not execution.is_terminal:
                self.start(execution_id)

    def on_action_outcome(self, event: WebhookEvent) -> None:
        """Runtime callback recorded by the gateway."""
        if event.execution_id:
            self.wake(event.execution_id)

    async def shutdown(self) -> None:
        """Stops all tasks. Their executions stay resumable from the store."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Driving

    async def _run(self, execution_id: str) -> None:
        try:
            await self._drive(execution_id)
        except asyncio.CancelledError:
            logger.info(f"Execution {execution_id} task stopped; state kept for resumption")
            raise
        except Exception as e:
            logger.error(f"Execution {execution_id} crashed: {e}")
            logger.error(traceback.format_exc())
            self.executions.transition(
                execution_id,
                ExecutionStatus.FAILED,
                error_category=type(e).__name__,
                error_message=str(e),
            )

    async def _drive(self, execution_id: str) -> None:
        execution = self.executions.find(execution_id)
        if execution is None or execution.is_terminal:
            return

        if execution.status == ExecutionStatus.PENDING:
            self.executions.transition(execution_id, ExecutionStatus.RUNNING, started_at=self.now())

        while True:
            execution = self.executions.find(execution_id)
            if execution is None or execution.status != ExecutionStatus.RUNNING:
                return

            if execution.cancel_requested:
                self.executions.transition(execution_id, ExecutionStatus.CANCELLED, finished_at=self.now())
                return

            action = execution.current_action
            if action is None:
                self.executions.transition(execution_id, ExecutionStatus.COMPLETED, finished_at=self.now())
                return

            token = IdempotencyKey.dispatch_token(execution.action_cursor, execution.attempt_count)
            if execution.dispatch_token == token:
                # a previous run claimed this attempt and did not record its outcome
                if execution.awaiting_callback:
                    outcome = await self._await_callback(execution)
                elif execution.lease_until is not None and self.now() < execution.lease_until:
                    logger.info(
                        f"Execution {execution_id}: dispatch {token} is leased by another worker until "
                        f"{execution.lease_until.isoformat()}; leaving it"
                    )
                    return
                else:
                    outcome = self._failure(
                        execution,
                        DispatchError("Local dispatch interrupted before its outcome was recorded"),
                    )
            else:
                eligible_at = self._eligible_at(execution, action)
                wait = seconds_until(eligible_at, self.now())
                if wait > 0:
                    if execution.next_eligible_at != eligible_at:
                        self.executions.set_next_eligible(execution_id, execution.action_cursor, eligible_at)
                    await self._pause(execution_id, wait)
                    continue

                outcome = await self._dispatch(execution, action)
                if outcome is None:
                    continue

            self._apply(execution, action, outcome)

    def _eligible_at(self, execution: WorkflowExecution, action: Action) -> Optional[datetime]:
        if execution.attempt_count > 0:
            return execution.next_eligible_at
        if action.delay_minutes > 0:
            base = execution.last_action_completed_at or execution.started_at or execution.created_at
            return base + timedelta(minutes=action.delay_minutes)
        return None

    async def _pause(self, execution_id: str, seconds: float) -> None:
        """Sleeps up to `seconds`, returning early when the execution is woken."""
        event = self._wakeup(execution_id)
        sleeper = asyncio.ensure_future(self.sleep(seconds))
        waiter = asyncio.ensure_future(event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()
        event.clear()

    def _wakeup(self, execution_id: str) -> asyncio.Event:
        event = self._wakeups.get(execution_id)
        if event is None:
            event = asyncio.Event()
            self._wakeups[execution_id] = event
        return event

    def _context(self, execution: WorkflowExecution) -> Dict[str, Any]:
        context: Dict[str, Any] = {}
        if execution.email_id:
            try:
                context.update(self.emails.get(execution.email_id).template_context())
            except NotFoundError:
                logger.warning(f"Execution {execution.id}: email {execution.email_id} no longer exists")
        context.update(execution.trigger_data)
        context.update({
            "execution_id": execution.id,
            "workflow_id": execution.workflow_id,
            "owner_id": execution.owner_id,
            "trigger_data": execution.trigger_data,
        })
        return context

    async def _dispatch(self, execution: WorkflowExecution, action: Action) -> Optional[ActionOutcome]:
        cursor, attempt = execution.action_cursor, execution.attempt_count

        if action.is_external:
            deadline = self.now() + timedelta(seconds=execution.callback_timeout_seconds)
            if not self.executions.claim_dispatch(execution.id, cursor, attempt, True, deadline):
                logger.info(f"Execution {execution.id}: dispatch {cursor}:{attempt} already claimed")
                return None
            try:
                await self.handlers.dispatch_external(execution, action, self._context(execution))
            except Exception as e:
                return self._failure(execution, e)
            logger.info(f"Execution {execution.id}: action {cursor} ({action.type.value}) awaiting callback")
            return await self._await_callback(execution.model_copy(update={"callback_deadline": deadline}))

        lease_until = self.now() + timedelta(seconds=self.dispatch_lease_seconds)
        if not self.executions.claim_dispatch(execution.id, cursor, attempt, lease_until=lease_until):
            logger.info(f"Execution {execution.id}: dispatch {cursor}:{attempt} already claimed")
            return None
        try:
            result = await self.handlers.run_local(execution, action, self._context(execution))
        except Exception as e:
            return self._failure(execution, e)
        return ActionOutcome(
            execution_id=execution.id,
            action_cursor=cursor,
            attempt=attempt,
            status=OutcomeStatus.SUCCEEDED,
            result=result or {},
        )

    async def _await_callback(self, execution: WorkflowExecution) -> ActionOutcome:
        """Waits for the runtime callback matching the current dispatch, or its deadline."""
        cursor, attempt = execution.action_cursor, execution.attempt_count
        while True:
            event = self.webhook_events.find_callback(execution.id, cursor, attempt)
            if event is not None:
                self.webhook_events.mark_consumed(event.id)
                return self._callback_outcome(execution, event)

            remaining = seconds_until(execution.callback_deadline, self.now())
            if remaining <= 0:
                return self._failure(
                    execution,
                    ExecutionTimeoutError(
                        f"No callback for action {cursor} within {execution.callback_timeout_seconds}s"
                    ),
                )
            await self._pause(execution.id, min(remaining, self.poll_interval_seconds))

    def _callback_outcome(self, execution: WorkflowExecution, event: WebhookEvent) -> ActionOutcome:
        result = event.payload.get("result") or {}
        status = (event.status or "").lower()
        if status in ("completed", "success", "succeeded"):
            return ActionOutcome(
                execution_id=execution.id,
                action_cursor=execution.action_cursor,
                attempt=execution.attempt_count,
                status=OutcomeStatus.SUCCEEDED,
                result=result,
            )

        message = result.get("error") or result.get("message") or f"Runtime reported status {event.status!r}"
        if status in FATAL_CALLBACK_STATUSES or result.get("retryable") is False:
            error = FatalActionError(str(message))
        else:
            error = DispatchError(str(message))
        return self._failure(execution, error)

    def _failure(self, execution: WorkflowExecution, exc: Exception) -> ActionOutcome:
        error = RetryManager.classify(exc)
        if not isinstance(exc, (DispatchError, FatalActionError)):
            logger.error(f"Execution {execution.id}: unexpected handler error: {exc}")
        return ActionOutcome(
            execution_id=execution.id,
            action_cursor=execution.action_cursor,
            attempt=execution.attempt_count,
            status=OutcomeStatus.FATAL if isinstance(error, FatalActionError) else OutcomeStatus.FAILED,
            error_category=type(error).__name__,
            error_message=str(error),
        )

    def _apply(self, execution: WorkflowExecution, action: Action, outcome: ActionOutcome) -> None:
        """Feeds one ActionOutcome into the retry state machine."""
        cursor, attempt = outcome.action_cursor, outcome.attempt

        if outcome.succeeded:
            entry = {
                "cursor": cursor,
                "type": action.type.value,
                "attempts": attempt + 1,
                "result": outcome.result,
            }
            if self.executions.complete_action(execution.id, cursor, entry, completed_at=self.now()):
                logger.info(f"Execution {execution.id}: action {cursor} ({action.type.value}) completed")
            return

        logger.warning(
            f"Execution {execution.id}: action {cursor} attempt {attempt + 1} failed "
            f"[{outcome.error_category}] {outcome.error_message}"
        )
        policy = execution.retry_policy
        failed_attempts = attempt + 1

        if outcome.status == OutcomeStatus.FATAL or RetryManager.exhausted(policy, failed_attempts):
            recorded = self.executions.record_failure(
                execution.id, cursor, attempt, outcome.error_category, outcome.error_message
            )
            if recorded is None:
                logger.info(f"Execution {execution.id}: outcome for {cursor}:{attempt} already recorded elsewhere")
                return
            self.executions.transition(
                execution.id,
                ExecutionStatus.FAILED,
                error_category=outcome.error_category,
                error_message=outcome.error_message,
                finished_at=self.now(),
            )
            return

        delay = RetryManager.backoff_seconds(policy, failed_attempts, jitter=self.retry_jitter)
        next_eligible_at = self.now() + timedelta(seconds=delay)
        self.executions.record_failure(
            execution.id,
            cursor,
            attempt,
            outcome.error_category,
            outcome.error_message,
            next_eligible_at=next_eligible_at,
        )
        logger.info(f"Execution {execution.id}: retrying action {cursor} in {delay:.0f}s")
