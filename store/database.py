"""
Relational storage for workflows, emails, executions and webhook events.

SQLite by default; any SQLAlchemy URL works through DATABASE_URL.
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from utils.time_utils import utcnow

logger = logging.getLogger("automation_service")

Base = declarative_base()


class WorkflowRow(Base):
    __tablename__ = "workflows"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(255), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    trigger_type = Column(String(32), nullable=False, index=True)
    trigger_conditions = Column(JSON, nullable=False, default=list)
    # copy of the category condition, if any, so listings can filter on it
    category = Column(String(64), nullable=True, index=True)
    actions = Column(JSON, nullable=False)
    active = Column(Boolean, nullable=False, default=False, index=True)
    max_retries = Column(Integer, nullable=False, default=3)
    retry_delay_seconds = Column(Integer, nullable=False, default=60)
    backoff = Column(String(16), nullable=False, default="fixed")
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class EmailRow(Base):
    __tablename__ = "emails"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(255), nullable=False, index=True)
    message_id = Column(String(255), nullable=True, unique=True)
    from_address = Column(String(320), nullable=False)
    subject = Column(Text, nullable=False, default="")
    body = Column(Text, nullable=False, default="")
    labels = Column(JSON, nullable=False, default=list)
    category = Column(String(100), nullable=False)
    priority = Column(String(16), nullable=False)
    confidence_score = Column(Float, nullable=False, default=0.0)
    received_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ExecutionRow(Base):
    __tablename__ = "workflow_executions"

    id = Column(String(36), primary_key=True)
    workflow_id = Column(String(36), nullable=False, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    email_id = Column(String(36), nullable=True)
    trigger_type = Column(String(32), nullable=False)
    trigger_data = Column(JSON, nullable=False, default=dict)
    actions = Column(JSON, nullable=False)
    retry_policy = Column(JSON, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    action_cursor = Column(Integer, nullable=False, default=0)
    attempt_count = Column(Integer, nullable=False, default=0)
    next_eligible_at = Column(DateTime, nullable=True)
    last_action_completed_at = Column(DateTime, nullable=True)
    dispatch_token = Column(String(32), nullable=True)
    # local dispatches only: the claiming worker owns the attempt until then
    lease_until = Column(DateTime, nullable=True)
    awaiting_callback = Column(Boolean, nullable=False, default=False)
    callback_deadline = Column(DateTime, nullable=True)
    callback_timeout_seconds = Column(Integer, nullable=False, default=300)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    result = Column(JSON, nullable=True)
    error_category = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        # one execution per (email, workflow); NULL email ids (manual runs) never collide
        UniqueConstraint("email_id", "workflow_id", name="uq_execution_email_workflow"),
        Index("idx_execution_status_eligible", "status", "next_eligible_at"),
        Index("idx_execution_created", "created_at"),
    )


class AttemptRow(Base):
    __tablename__ = "execution_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String(36), nullable=False, index=True)
    action_cursor = Column(Integer, nullable=False)
    attempt = Column(Integer, nullable=False)
    error_category = Column(String(64), nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class WebhookEventRow(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(16), nullable=False)
    external_event_id = Column(String(255), nullable=False)
    execution_id = Column(String(36), nullable=True, index=True)
    action_cursor = Column(Integer, nullable=True)
    attempt = Column(Integer, nullable=True)
    status = Column(String(32), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    consumed = Column(Boolean, nullable=False, default=False)
    received_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("source", "external_event_id", name="uq_webhook_source_event"),
    )


class Database:
    """SQLAlchemy engine and session factory shared by the stores."""

    def __init__(self, database_url: str = "sqlite:///./automation.db"):
        self.database_url = database_url

        engine_kwargs = {}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # a single shared connection keeps the in-memory database alive
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(database_url, future=True, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"Database initialized: {database_url}")

    def init_schema(self) -> None:
        """Create tables if they do not exist."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """One transaction: commits on success, rolls back on any error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
