from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from enum import Enum
from datetime import datetime

from utils.email_validator_lite import normalize_address
from utils.time_utils import utcnow

UNCATEGORIZED = "uncategorized"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Classification(BaseModel):
    category: str = UNCATEGORIZED
    priority: Priority = Priority.MEDIUM
    confidence_score: float = Field(0.0, ge=0.0, le=1.0)


class InboundEmail(BaseModel):
    """Raw message envelope as delivered by the mail provider or the ingestion API."""
    message_id: Optional[str] = None
    from_address: str = Field(..., alias="from")
    to: Optional[str] = None
    subject: str = ""
    body: str = ""
    received_at: Optional[datetime] = None
    labels: List[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @field_validator("from_address", "to")
    @classmethod
    def _normalize_address(cls, v: Optional[str]) -> Optional[str]:
        return normalize_address(v)


class Email(BaseModel):
    id: str
    owner_id: str
    message_id: Optional[str] = None
    from_address: str
    subject: str = ""
    body: str = ""
    labels: List[str] = Field(default_factory=list)
    category: str = UNCATEGORIZED
    priority: Priority = Priority.MEDIUM
    confidence_score: float = 0.0
    received_at: datetime = Field(default_factory=utcnow)

    @property
    def classification(self) -> Classification:
        return Classification(
            category=self.category,
            priority=self.priority,
            confidence_score=self.confidence_score,
        )

    def template_context(self) -> dict:
        return {
            "email_id": self.id,
            "message_id": self.message_id,
            "sender": self.from_address,
            "subject": self.subject,
            "body": self.body,
            "category": self.category,
            "priority": self.priority.value,
            "confidence_score": self.confidence_score,
            "received_at": self.received_at.isoformat(),
        }
