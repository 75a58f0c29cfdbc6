import logging
import uuid
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from errors import NotFoundError
from models.email import Classification, Email, InboundEmail, Priority
from store.database import Database, EmailRow
from utils.time_utils import to_naive_utc, utcnow

logger = logging.getLogger("automation_service")


def _to_model(row: EmailRow) -> Email:
    return Email(
        id=row.id,
        owner_id=row.owner_id,
        message_id=row.message_id,
        from_address=row.from_address,
        subject=row.subject,
        body=row.body,
        labels=row.labels or [],
        category=row.category,
        priority=Priority(row.priority),
        confidence_score=row.confidence_score,
        received_at=row.received_at,
    )


class EmailStore:
    """Classified emails. Rows are written once and never modified."""

    def __init__(self, db: Database):
        self.db = db

    def save(self, owner_id: str, envelope: InboundEmail, classification: Classification) -> Tuple[Email, bool]:
        """
        Persists a classified email. Returns (email, created); when the
        provider message_id was already stored the existing email is returned.
        """
        if envelope.message_id:
            existing = self.get_by_message_id(envelope.message_id)
            if existing is not None:
                return existing, False

        row = EmailRow(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            message_id=envelope.message_id,
            from_address=envelope.from_address,
            subject=envelope.subject,
            body=envelope.body,
            labels=list(envelope.labels),
            category=classification.category,
            priority=classification.priority.value,
            confidence_score=round(classification.confidence_score, 2),
            received_at=to_naive_utc(envelope.received_at) or utcnow(),
        )
        try:
            with self.db.session() as session:
                session.add(row)
        except IntegrityError:
            # lost a race with a concurrent delivery of the same message
            existing = self.get_by_message_id(envelope.message_id)
            if existing is None:
                raise
            return existing, False

        logger.info(f"Stored email {row.id} from {row.from_address} as {row.category}/{row.priority}")
        return _to_model(row), True

    def get(self, email_id: str) -> Email:
        with self.db.session() as session:
            row = session.get(EmailRow, email_id)
            if row is None:
                raise NotFoundError(f"Email {email_id} not found")
            return _to_model(row)

    def get_by_message_id(self, message_id: str) -> Optional[Email]:
        with self.db.session() as session:
            row = session.scalars(select(EmailRow).where(EmailRow.message_id == message_id)).first()
            return _to_model(row) if row is not None else None
