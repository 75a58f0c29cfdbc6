import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from models.webhook import WebhookEvent, WebhookSource
from store.database import Database, WebhookEventRow

logger = logging.getLogger("automation_service")


def _to_model(row: WebhookEventRow) -> WebhookEvent:
    return WebhookEvent(
        id=row.id,
        source=WebhookSource(row.source),
        external_event_id=row.external_event_id,
        execution_id=row.execution_id,
        action_cursor=row.action_cursor,
        attempt=row.attempt,
        status=row.status,
        payload=row.payload or {},
        consumed=row.consumed,
        received_at=row.received_at,
    )


class WebhookEventStore:
    """
    Inbound webhook events keyed by (source, external_event_id).
    Runtime callbacks stay here until the engine consumes them.
    """

    def __init__(self, db: Database):
        self.db = db

    def record(self, event: WebhookEvent) -> Optional[WebhookEvent]:
        """Stores the event. Returns None if the key was already recorded."""
        row = WebhookEventRow(
            source=event.source.value,
            external_event_id=event.external_event_id,
            execution_id=event.execution_id,
            action_cursor=event.action_cursor,
            attempt=event.attempt,
            status=event.status,
            payload=event.payload,
            consumed=event.consumed,
            received_at=event.received_at,
        )
        try:
            with self.db.session() as session:
                session.add(row)
        except IntegrityError:
            logger.info(f"Duplicate {event.source.value} event {event.external_event_id} ignored")
            return None
        return _to_model(row)

    def get(self, source, external_event_id: str) -> Optional[WebhookEvent]:
        source = WebhookSource(source).value
        with self.db.session() as session:
            row = session.scalars(
                select(WebhookEventRow).where(
                    WebhookEventRow.source == source,
                    WebhookEventRow.external_event_id == external_event_id,
                )
            ).first()
            return _to_model(row) if row is not None else None

    def find_callback(self, execution_id: str, action_cursor: int, attempt: int) -> Optional[WebhookEvent]:
        """Oldest unconsumed runtime callback addressed to this dispatch."""
        with self.db.session() as session:
            row = session.scalars(
                select(WebhookEventRow)
                .where(
                    WebhookEventRow.source == WebhookSource.RUNTIME.value,
                    WebhookEventRow.execution_id == execution_id,
                    WebhookEventRow.action_cursor == action_cursor,
                    WebhookEventRow.attempt == attempt,
                    WebhookEventRow.consumed.is_(False),
                )
                .order_by(WebhookEventRow.id)
            ).first()
            return _to_model(row) if row is not None else None

    def mark_consumed(self, event_id: int) -> bool:
        with self.db.session() as session:
            res = session.execute(
                update(WebhookEventRow)
                .where(WebhookEventRow.id == event_id, WebhookEventRow.consumed.is_(False))
                .values(consumed=True)
            )
            return res.rowcount == 1
