from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from enum import Enum
from datetime import datetime

from models.workflow import Action, RetryPolicy, TriggerType
from utils.time_utils import utcnow


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS = {
    ExecutionStatus.RUNNING: {ExecutionStatus.PENDING},
    ExecutionStatus.COMPLETED: {ExecutionStatus.RUNNING},
    ExecutionStatus.FAILED: {ExecutionStatus.RUNNING},
    ExecutionStatus.CANCELLED: {ExecutionStatus.RUNNING},
}


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    FATAL = "fatal"


class ActionOutcome(BaseModel):
    """
    Result of one attempt of one action. Produced by local handlers and by
    runtime completion callbacks alike.
    """
    execution_id: str
    action_cursor: int
    attempt: int
    status: OutcomeStatus
    result: Dict[str, Any] = Field(default_factory=dict)
    error_category: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED


class WorkflowExecution(BaseModel):
    id: str
    workflow_id: str
    owner_id: str
    email_id: Optional[str] = None
    trigger_type: TriggerType = TriggerType.EMAIL_RECEIVED
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    actions: List[Action] = Field(default_factory=list)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    status: ExecutionStatus = ExecutionStatus.PENDING
    action_cursor: int = 0
    attempt_count: int = 0
    next_eligible_at: Optional[datetime] = None
    last_action_completed_at: Optional[datetime] = None
    dispatch_token: Optional[str] = None
    lease_until: Optional[datetime] = None
    awaiting_callback: bool = False
    callback_deadline: Optional[datetime] = None
    callback_timeout_seconds: int = 300
    cancel_requested: bool = False
    result: Optional[Dict[str, Any]] = None
    error_category: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_action(self) -> Optional[Action]:
        if 0 <= self.action_cursor < len(self.actions):
            return self.actions[self.action_cursor]
        return None

    def owner_view(self) -> Dict[str, Any]:
        """What an owner may see: status, result and the last error, never the attempt log."""
        view = {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "email_id": self.email_id,
            "trigger_type": self.trigger_type.value,
            "status": self.status.value,
            "result": self.result,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "created_at": self.created_at,
        }
        if self.status == ExecutionStatus.FAILED:
            view["error"] = {"category": self.error_category, "message": self.error_message}
        return view


class AttemptLogEntry(BaseModel):
    id: Optional[int] = None
    execution_id: str
    action_cursor: int
    attempt: int
    error_category: str
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ExecutionPage(BaseModel):
    items: List[WorkflowExecution]
    total: int
    page: int
    page_size: int
