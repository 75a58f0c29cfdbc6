import asyncio
import logging
from typing import Any, Dict, List

from .base_sender import BaseSender

logger = logging.getLogger("automation_service")


class MockSender(BaseSender):
    """Logs instead of sending. Keeps every message in `sent` for inspection."""

    provider_name = "mock"

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.latency = float(config.get("latency_seconds", 0))
        self.sent: List[Dict[str, Any]] = []

    async def send(self, from_email, to_email, subject, html_body, text_body=None, from_name=None, reply_to=None, headers=None) -> bool:
        logger.info(f"[{self.provider_name}] Sending email...")
        logger.info(f"   From: {from_name} <{from_email}>")
        logger.info(f"   To: {to_email}")
        logger.info(f"   Subject: {subject}")
        if self.latency:
            # Simulate network latency
            await asyncio.sleep(self.latency)
        self.sent.append({
            "from_email": from_email,
            "to_email": to_email,
            "subject": subject,
            "html_body": html_body,
            "text_body": text_body,
            "reply_to": reply_to,
            "headers": self.merged_headers(headers),
        })
        return True
