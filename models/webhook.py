from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from enum import Enum
from datetime import datetime

from utils.time_utils import utcnow


class WebhookSource(str, Enum):
    RUNTIME = "runtime"
    MAIL = "mail"


class DomainEventType(str, Enum):
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EMAIL_RECEIVED = "email_received"


class RuntimeCallback(BaseModel):
    """Completion callback posted by the external automation runtime."""
    workflow_id: str
    execution_id: str
    status: str
    result: Dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = None
    action_cursor: Optional[int] = None
    attempt: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status.lower() in ("completed", "success", "succeeded")


class WebhookEvent(BaseModel):
    id: Optional[int] = None
    source: WebhookSource
    external_event_id: str
    execution_id: Optional[str] = None
    action_cursor: Optional[int] = None
    attempt: Optional[int] = None
    status: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    consumed: bool = False
    received_at: datetime = Field(default_factory=utcnow)


class GatewayResult(BaseModel):
    accepted: bool = True
    duplicate: bool = False
    applied: bool = False
    event_type: Optional[DomainEventType] = None
    execution_id: Optional[str] = None
    email_id: Optional[str] = None
    executions_triggered: list = Field(default_factory=list)
