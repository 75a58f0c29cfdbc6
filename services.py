import logging
from typing import Optional

from api_clients.notification_client import NotificationClient
from api_clients.runtime_client import RuntimeClient
from classifier.base import BaseClassifier
from classifier.keyword_classifier import KeywordClassifier
from config import Settings
from executor.action_handlers import ActionHandlers
from executor.engine_builder import EngineBuilder
from executor.execution_engine import ExecutionEngine
from executor.template_renderer import TemplateRenderer
from executor.trigger_matcher import TriggerMatcher
from gateway.webhook_gateway import WebhookGateway
from pipeline import EmailPipeline
from scheduler.scheduler_loop import SchedulerLoop
from senders.base_sender import BaseSender
from store.database import Database
from store.email_store import EmailStore
from store.execution_store import ExecutionStore
from store.webhook_event_store import WebhookEventStore
from store.workflow_store import WorkflowStore
from utils.rate_limiter import FixedWindowRateLimiter

logger = logging.getLogger("automation_service")


class Services:
    """Wires stores, classifier, engine, pipeline and gateway from one Settings object."""

    def __init__(
        self,
        settings: Settings,
        database: Optional[Database] = None,
        classifier: Optional[BaseClassifier] = None,
        sender: Optional[BaseSender] = None,
        runtime_client: Optional[RuntimeClient] = None,
        notification_client: Optional[NotificationClient] = None,
        engine_options: Optional[dict] = None,
    ):
        self.settings = settings

        self.db = database or Database(settings.database_url)
        self.db.init_schema()

        self.classifier = classifier or KeywordClassifier.from_file(settings.classifier_config_path)
        self.workflow_store = WorkflowStore(self.db, self.classifier.categories)
        self.email_store = EmailStore(self.db)
        self.execution_store = ExecutionStore(self.db)
        self.webhook_events = WebhookEventStore(self.db)

        self.runtime_client = runtime_client or RuntimeClient(
            settings.runtime_api_url,
            api_key=settings.runtime_api_key,
            callback_url=settings.runtime_callback_url,
        )
        self.sender = sender or EngineBuilder.build(settings.delivery_engine)
        self.handlers = ActionHandlers(
            sender=self.sender,
            engine_config=settings.delivery_engine,
            runtime_client=self.runtime_client,
            notification_client=notification_client,
            renderer=TemplateRenderer(),
        )

        self.engine = ExecutionEngine(
            self.execution_store,
            self.email_store,
            self.webhook_events,
            self.handlers,
            default_callback_timeout_seconds=settings.default_callback_timeout_seconds,
            retry_jitter=settings.retry_jitter,
            dispatch_lease_seconds=settings.dispatch_lease_seconds,
            **(engine_options or {}),
        )
        self.matcher = TriggerMatcher()
        self.pipeline = EmailPipeline(
            self.classifier, self.email_store, self.workflow_store, self.matcher, self.engine
        )
        self.gateway = WebhookGateway(
            self.webhook_events,
            self.execution_store,
            self.engine,
            self.pipeline,
            runtime_secret=settings.runtime_webhook_secret,
            mail_secret=settings.mail_webhook_secret,
            max_age_seconds=settings.signature_max_age_seconds,
        )
        self.rate_limiter = FixedWindowRateLimiter(
            settings.rate_limit_requests, settings.rate_limit_window_seconds
        )
        self.scheduler = SchedulerLoop(self.engine, interval_seconds=settings.resume_interval_seconds)

    async def close(self) -> None:
        self.scheduler.stop()
        await self.engine.shutdown()
        self.db.dispose()
