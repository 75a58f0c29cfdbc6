from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from enum import Enum
from datetime import datetime

from utils.time_utils import utcnow


class TriggerType(str, Enum):
    EMAIL_RECEIVED = "email_received"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    MANUAL = "manual"


class ActionType(str, Enum):
    SEND_AUTO_REPLY = "send_auto_reply"
    CREATE_TICKET = "create_ticket"
    NOTIFY = "notify"
    CATEGORIZE_EMAIL = "categorize_email"


class ConditionField(str, Enum):
    CATEGORY = "category"
    PRIORITY = "priority"
    SENDER = "sender"


class ConditionOperator(str, Enum):
    EQUALS = "equals"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# Action types that always run in the external automation runtime
EXTERNAL_ONLY_ACTIONS = {ActionType.CREATE_TICKET, ActionType.CATEGORIZE_EMAIL}


class TriggerCondition(BaseModel):
    field: ConditionField
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: str

    @field_validator("value")
    @classmethod
    def _strip_value(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Condition value must not be empty")
        return v


class Action(BaseModel):
    type: ActionType
    config: Dict[str, Any] = Field(default_factory=dict)
    delay_minutes: int = Field(0, ge=0)

    @property
    def is_external(self) -> bool:
        if self.type in EXTERNAL_ONLY_ACTIONS:
            return True
        return str(self.config.get("dispatch", "local")).lower() == "external"


class RetryPolicy(BaseModel):
    max_retries: int = Field(3, ge=0, le=10)
    retry_delay_seconds: int = Field(60, ge=1, le=3600)
    backoff: BackoffStrategy = BackoffStrategy.FIXED


def normalize_conditions(raw: Any) -> Any:
    """
    Accepts either the tagged list form or a plain {field: value} mapping
    and returns the list form.
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        return [{"field": k, "operator": ConditionOperator.EQUALS.value, "value": v} for k, v in raw.items()]
    return raw


class WorkflowBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    trigger_type: TriggerType = TriggerType.EMAIL_RECEIVED
    trigger_conditions: List[TriggerCondition] = Field(default_factory=list)
    actions: List[Action] = Field(..., min_length=1)
    active: bool = False
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Workflow name is required")
        return v

    @field_validator("trigger_conditions", mode="before")
    @classmethod
    def _normalize_conditions(cls, v: Any) -> Any:
        return normalize_conditions(v)


class WorkflowCreate(WorkflowBase):
    pass


class WorkflowUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    trigger_conditions: Optional[List[TriggerCondition]] = None
    actions: Optional[List[Action]] = Field(None, min_length=1)
    active: Optional[bool] = None
    retry_policy: Optional[RetryPolicy] = None

    @field_validator("trigger_conditions", mode="before")
    @classmethod
    def _normalize_conditions(cls, v: Any) -> Any:
        if v is None:
            return None
        return normalize_conditions(v)


class Workflow(WorkflowBase):
    id: str
    owner_id: str
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def condition_map(self) -> Dict[str, str]:
        return {c.field.value: c.value for c in self.trigger_conditions}
