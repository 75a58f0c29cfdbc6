import hashlib
import logging

logger = logging.getLogger("automation_service")


class IdempotencyKey:
    @staticmethod
    def compute_hash(*parts) -> str:
        """
        Computes a deterministic hash for deduplication, e.g. for a runtime
        callback that carries no event id of its own:
        execution_id + action_cursor + attempt + status.
        """
        raw = ":".join("" if p is None else str(p) for p in parts)
        return hashlib.sha256(raw.encode()).hexdigest()

    @staticmethod
    def dispatch_token(action_cursor: int, attempt: int) -> str:
        """Claim marker for one dispatch of one action attempt."""
        return f"{action_cursor}:{attempt}"


class IdempotencyChecker:
    def __init__(self, webhook_event_store):
        self.webhook_event_store = webhook_event_store

    def is_already_processed(self, source: str, external_event_id: str) -> bool:
        """
        Checks if a callback keyed by (source, external_event_id) has already been recorded.
        """
        if self.webhook_event_store.get(source, external_event_id) is not None:
            logger.info(f"Idempotency check: {source} event {external_event_id} already recorded.")
            return True
        return False
