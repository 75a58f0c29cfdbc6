import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from api_clients.runtime_client import RuntimeClient
from config import Settings
from models.email import InboundEmail
from models.workflow import WorkflowCreate
from senders.mock_senders import MockSender
from services import Services
from store.database import Database

OWNER = "support@acme-spas.com"
RUNTIME_SECRET = "runtime-test-secret"
MAIL_SECRET = "mail-test-secret"


class FakeClock:
    """Deterministic time source. sleep() advances the clock instead of waiting."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.current = start
        self.sleeps = []
        self.on_sleep = None

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        if self.on_sleep is not None:
            self.on_sleep(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        runtime_api_url="http://runtime.test/api/v1",
        runtime_api_key="test-key",
        runtime_webhook_secret=RUNTIME_SECRET,
        mail_webhook_secret=MAIL_SECRET,
        public_base_url="http://automation.test",
        rate_limit_requests=1000,
        rate_limit_window_seconds=900,
        delivery_engine={"engine_type": "mock", "from_email": "noreply@acme-spas.com", "rate_limit_per_minute": 0},
    )


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.init_schema()
    yield database
    database.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return MockSender({})


@pytest.fixture
def runtime_client():
    client = MagicMock(spec=RuntimeClient)
    client.build_payload.side_effect = lambda **kwargs: dict(kwargs, action=kwargs["action"].model_dump(mode="json"))
    client.execute_async = AsyncMock(return_value={"accepted": True})
    return client


@pytest.fixture
def services(settings, db, clock, sender, runtime_client):
    return Services(
        settings,
        database=db,
        sender=sender,
        runtime_client=runtime_client,
        engine_options={"now": clock.now, "sleep": clock.sleep, "poll_interval_seconds": 5},
    )


@pytest.fixture
def make_workflow(services):
    def _make(actions=None, conditions=None, active=True, owner_id=OWNER, **kwargs):
        definition = WorkflowCreate(
            name=kwargs.pop("name", "Urgent hot tub issues"),
            trigger_conditions=conditions if conditions is not None else {"category": "urgent_issue"},
            actions=actions or [{"type": "send_auto_reply", "config": {"template": "We are on it: {{ subject }}"}}],
            active=active,
            **kwargs,
        )
        return services.workflow_store.create(owner_id, definition)
    return _make


@pytest.fixture
def urgent_envelope():
    return InboundEmail(**{
        "message_id": "msg-001",
        "from": "Customer@Example.com",
        "to": OWNER,
        "subject": "Hot tub not heating, urgent",
        "body": "The water has been cold since last night.",
    })
