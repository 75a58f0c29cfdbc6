"""
Webhook gateway: verifies, deduplicates and normalizes inbound callbacks.

Runtime callbacks are recorded as webhook events and handed to the engine,
which consumes the one addressed to its current dispatch. Mail-provider
deliveries go straight into the email pipeline.
"""

import json
import logging
import time
from typing import Callable, Mapping, Optional, Tuple

from pydantic import ValidationError

from errors import NotFoundError, SignatureError, WorkflowValidationError
from models.email import InboundEmail
from models.webhook import (
    DomainEventType,
    GatewayResult,
    RuntimeCallback,
    WebhookEvent,
    WebhookSource,
)
from store.execution_store import ExecutionStore
from store.webhook_event_store import WebhookEventStore
from utils.idempotency import IdempotencyChecker, IdempotencyKey

from .signatures import verify_mail, verify_runtime

logger = logging.getLogger("automation_service")

RUNTIME_SIGNATURE_HEADER = "x-runtime-signature"
RUNTIME_TIMESTAMP_HEADER = "x-runtime-timestamp"
MAIL_SIGNATURE_HEADER = "x-mail-signature"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _parse(raw_body: bytes) -> dict:
    try:
        data = json.loads(raw_body or b"{}")
    except ValueError as e:
        raise WorkflowValidationError(f"Webhook body is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise WorkflowValidationError("Webhook body must be a JSON object")
    return data


def _dispatch_of(callback: RuntimeCallback, execution) -> Tuple[Optional[int], Optional[int]]:
    """
    The (action_cursor, attempt) a callback answers. A callback that names
    no action binds to the dispatch currently awaiting a callback, if any;
    otherwise it answers nothing and is parked.
    """
    if callback.action_cursor is not None:
        attempt = callback.attempt
        if attempt is None and callback.action_cursor == execution.action_cursor:
            attempt = execution.attempt_count
        return callback.action_cursor, attempt
    if execution.awaiting_callback and not execution.is_terminal:
        return execution.action_cursor, execution.attempt_count
    return None, None


class WebhookGateway:
    def __init__(
        self,
        webhook_events: WebhookEventStore,
        execution_store: ExecutionStore,
        engine,
        pipeline,
        runtime_secret: str,
        mail_secret: str,
        max_age_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.webhook_events = webhook_events
        self.executions = execution_store
        self.engine = engine
        self.pipeline = pipeline
        self.runtime_secret = runtime_secret
        self.mail_secret = mail_secret
        self.max_age_seconds = max_age_seconds
        self.clock = clock
        self.idempotency = IdempotencyChecker(webhook_events)

    async def handle_runtime(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayResult:
        try:
            verify_runtime(
                self.runtime_secret,
                raw_body,
                _header(headers, RUNTIME_SIGNATURE_HEADER),
                _header(headers, RUNTIME_TIMESTAMP_HEADER),
                max_age=self.max_age_seconds,
                clock=self.clock,
            )
        except SignatureError as e:
            logger.warning(f"Rejected runtime callback: {e.message}")
            raise

        try:
            callback = RuntimeCallback(**_parse(raw_body))
        except ValidationError as e:
            raise WorkflowValidationError("Malformed runtime callback", {"errors": e.errors(include_url=False)})

        execution = self.executions.find(callback.execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {callback.execution_id} not found")
        if execution.workflow_id != callback.workflow_id:
            raise WorkflowValidationError(
                f"Execution {execution.id} does not belong to workflow {callback.workflow_id}"
            )

        cursor, attempt = _dispatch_of(callback, execution)
        current = cursor is not None and (cursor, attempt) == (execution.action_cursor, execution.attempt_count)
        # keyed on what the runtime sent, never on where the execution is now
        event_id = callback.event_id or IdempotencyKey.compute_hash(
            execution.id,
            callback.workflow_id,
            callback.action_cursor,
            callback.attempt,
            callback.status.lower(),
            json.dumps(callback.result, sort_keys=True, default=str),
        )
        event_type = (
            DomainEventType.EXECUTION_COMPLETED if callback.succeeded else DomainEventType.EXECUTION_FAILED
        )

        if self.idempotency.is_already_processed(WebhookSource.RUNTIME.value, event_id):
            return GatewayResult(duplicate=True, event_type=event_type, execution_id=execution.id)

        event = self.webhook_events.record(WebhookEvent(
            source=WebhookSource.RUNTIME,
            external_event_id=event_id,
            execution_id=execution.id,
            action_cursor=cursor,
            attempt=attempt,
            status=callback.status,
            payload=callback.model_dump(mode="json"),
            consumed=execution.is_terminal or not current,
        ))
        if event is None:
            return GatewayResult(duplicate=True, event_type=event_type, execution_id=execution.id)

        if execution.is_terminal:
            logger.info(
                f"Callback {event_id} for execution {execution.id} recorded; execution already {execution.status.value}"
            )
            return GatewayResult(applied=False, event_type=event_type, execution_id=execution.id)

        if not current:
            logger.warning(
                f"Callback {event_id} for execution {execution.id} answers no pending dispatch "
                f"(action {cursor}, attempt {attempt}); parked"
            )
            return GatewayResult(applied=False, event_type=event_type, execution_id=execution.id)

        self.engine.on_action_outcome(event)
        logger.info(f"Callback {event_id} for execution {execution.id} ({callback.status}) handed to engine")
        return GatewayResult(applied=True, event_type=event_type, execution_id=execution.id)

    async def handle_mail(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        owner_id: Optional[str] = None,
    ) -> GatewayResult:
        try:
            verify_mail(self.mail_secret, raw_body, _header(headers, MAIL_SIGNATURE_HEADER))
        except SignatureError as e:
            logger.warning(f"Rejected mail webhook: {e.message}")
            raise

        try:
            envelope = InboundEmail(**_parse(raw_body))
        except ValidationError as e:
            raise WorkflowValidationError("Malformed mail envelope", {"errors": e.errors(include_url=False)})

        event_id = envelope.message_id or IdempotencyKey.compute_hash(raw_body.decode("utf-8", "replace"))
        if self.idempotency.is_already_processed(WebhookSource.MAIL.value, event_id):
            return GatewayResult(duplicate=True, event_type=DomainEventType.EMAIL_RECEIVED)

        # recorded after ingestion so a failed ingest can be redelivered
        result = await self.pipeline.ingest(envelope, owner_id=owner_id)
        self.webhook_events.record(WebhookEvent(
            source=WebhookSource.MAIL,
            external_event_id=event_id,
            payload={"message_id": envelope.message_id, "email_id": result.email.id},
            consumed=True,
        ))
        return GatewayResult(
            applied=True,
            event_type=DomainEventType.EMAIL_RECEIVED,
            email_id=result.email.id,
            executions_triggered=result.execution_ids,
        )
