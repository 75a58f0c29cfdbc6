import logging
from typing import Any, Dict, Optional

from api_clients.notification_client import NotificationClient
from api_clients.runtime_client import RuntimeClient
from errors import DispatchError, FatalActionError
from models.execution import WorkflowExecution
from models.workflow import Action, ActionType
from senders.base_sender import BaseSender, thread_headers
from utils.email_validator_lite import is_valid_address
from utils.rate_limiter import TokenBucketRateLimiter

from .template_renderer import TemplateRenderer

logger = logging.getLogger("automation_service")

DEFAULT_REPLY_SUBJECT = "Re: {{ subject }}"
DEFAULT_NOTIFY_SUBJECT = "[{{ category }}] New email from {{ sender }}"
DEFAULT_MANUAL_NOTIFY_SUBJECT = "Workflow {{ workflow_id }} notification"


class ActionHandlers:
    """
    Executes one action attempt. Local actions (auto-reply, notify) render
    their templates and send through the delivery engine; everything else
    is forwarded to the external runtime.

    Handlers raise DispatchError for transient failures and
    FatalActionError when the action config itself is unusable.
    """

    def __init__(
        self,
        sender: BaseSender,
        engine_config: Dict[str, Any],
        runtime_client: RuntimeClient,
        notification_client: Optional[NotificationClient] = None,
        renderer: Optional[TemplateRenderer] = None,
    ):
        self.sender = sender
        self.engine_config = engine_config
        self.runtime_client = runtime_client
        self.notification_client = notification_client or NotificationClient()
        self.renderer = renderer or TemplateRenderer()
        self.rate_limiter = TokenBucketRateLimiter(
            rate_limit_per_minute=int(engine_config.get("rate_limit_per_minute", 60))
        )

    async def run_local(self, execution: WorkflowExecution, action: Action, context: Dict[str, Any]) -> Dict[str, Any]:
        if action.type == ActionType.SEND_AUTO_REPLY:
            return await self._send_auto_reply(action, context)
        if action.type == ActionType.NOTIFY:
            return await self._notify(execution, action, context)
        raise FatalActionError(f"Action type {action.type.value} cannot run locally")

    async def dispatch_external(
        self,
        execution: WorkflowExecution,
        action: Action,
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Hands the action to the runtime. Completion is reported by callback."""
        runtime_workflow_id = action.config.get("runtime_workflow_id") or action.type.value
        payload = self.runtime_client.build_payload(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            action_cursor=execution.action_cursor,
            attempt=execution.attempt_count,
            action=action,
            context=context,
        )
        return await self.runtime_client.execute_async(runtime_workflow_id, payload)

    # Local handlers

    async def _deliver(
        self,
        to_email: str,
        subject: str,
        body: str,
        config: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        if not is_valid_address(to_email):
            raise FatalActionError(f"Recipient {to_email!r} is not a valid email address")

        from_email = config.get("from_email") or self.engine_config.get("from_email")
        html = bool(config.get("html", False))

        # throttling only ever lengthens the wait before sending
        await self.rate_limiter.acquire()
        sent = await self.sender.send(
            from_email=from_email,
            to_email=to_email,
            subject=subject,
            html_body=body if html else "",
            text_body=None if html else body,
            from_name=config.get("from_name") or self.engine_config.get("from_name"),
            reply_to=config.get("reply_to"),
            headers={**(config.get("headers") or {}), **(headers or {})},
        )
        if not sent:
            raise DispatchError(f"Delivery via {self.sender.provider_name} to {to_email} failed")

        logger.info(f"Sent '{subject}' to {to_email} via {self.sender.provider_name}")
        return {"to": to_email, "subject": subject, "provider": self.sender.provider_name}

    async def _send_auto_reply(self, action: Action, context: Dict[str, Any]) -> Dict[str, Any]:
        config = action.config
        template = config.get("template") or config.get("body")
        if not template:
            raise FatalActionError("send_auto_reply requires a 'template'")

        to_email = config.get("to") or context.get("sender")
        if not to_email:
            raise FatalActionError("send_auto_reply has no recipient: no 'to' and no originating sender")

        subject = self.renderer.render(config.get("subject", DEFAULT_REPLY_SUBJECT), context)
        body = self.renderer.render(template, context)
        # only thread the reply when answering the original sender
        reply_headers = thread_headers(context.get("message_id")) if to_email == context.get("sender") else {}
        return await self._deliver(to_email, subject, body, config, reply_headers)

    async def _notify(self, execution: WorkflowExecution, action: Action, context: Dict[str, Any]) -> Dict[str, Any]:
        config = action.config
        message = self.renderer.render(config.get("template") or config.get("message", ""), context)

        url = config.get("url")
        if url:
            payload = {
                "execution_id": execution.id,
                "workflow_id": execution.workflow_id,
                "message": message,
                "email_id": context.get("email_id"),
                "category": context.get("category"),
                "priority": context.get("priority"),
            }
            response = await self.notification_client.notify_async(url, payload, config.get("headers"))
            return {"channel": "webhook", "url": url, "response": response}

        to_email = config.get("to")
        if not to_email:
            raise FatalActionError("notify requires either 'url' or 'to'")
        default_subject = DEFAULT_NOTIFY_SUBJECT if "sender" in context else DEFAULT_MANUAL_NOTIFY_SUBJECT
        subject = self.renderer.render(config.get("subject", default_subject), context)
        result = await self._deliver(to_email, subject, message, config)
        result["channel"] = "email"
        return result
