import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger("automation_service")

# Marks outbound mail as machine generated so other autoresponders stay quiet (RFC 3834)
AUTOMATED_HEADERS = {
    "Auto-Submitted": "auto-replied",
    "X-Auto-Response-Suppress": "All",
}


def format_sender(from_email: str, from_name: Optional[str] = None) -> str:
    from_email = (from_email or "").strip()
    if from_name and from_name.strip():
        return f"{from_name.strip()} <{from_email}>"
    return from_email


def thread_headers(message_id: Optional[str]) -> Dict[str, str]:
    """In-Reply-To/References so a reply lands in the customer's original thread."""
    if not message_id:
        return {}
    ref = message_id.strip()
    if not ref.startswith("<"):
        ref = f"<{ref}>"
    return {"In-Reply-To": ref, "References": ref}


class BaseSender(ABC):
    """Delivery engine for locally executed actions. Returns False when the provider rejects the send."""

    provider_name = "base"

    @abstractmethod
    async def send(self,
                   from_email: str,
                   to_email: str,
                   subject: str,
                   html_body: str,
                   text_body: Optional[str] = None,
                   from_name: Optional[str] = None,
                   reply_to: Optional[str] = None,
                   headers: Optional[Dict[str, str]] = None) -> bool:
        pass

    @staticmethod
    def merged_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        merged = dict(AUTOMATED_HEADERS)
        merged.update(headers or {})
        return merged


class HTTPSender(BaseSender):
    """Providers with a JSON/form HTTP API. Subclasses build the request, this class posts it."""

    def __init__(self, config: Dict[str, Any]):
        self.api_key = config.get("api_key")
        self.timeout = config.get("timeout_seconds", 30)

    @abstractmethod
    def build_request(self, from_field: str, from_email: str, to_email: str, subject: str,
                      html_body: str, text_body: Optional[str], reply_to: Optional[str],
                      headers: Dict[str, str]) -> Dict[str, Any]:
        """Keyword arguments for requests.post (url included)."""

    def accepted(self, response: requests.Response) -> bool:
        return 200 <= response.status_code < 300

    async def send(self, from_email, to_email, subject, html_body, text_body=None, from_name=None, reply_to=None, headers=None) -> bool:
        request = self.build_request(
            format_sender(from_email, from_name),
            (from_email or "").strip(),
            (to_email or "").strip(),
            subject,
            html_body,
            text_body,
            reply_to,
            self.merged_headers(headers),
        )
        try:
            response = await asyncio.to_thread(requests.post, timeout=self.timeout, **request)
        except requests.exceptions.RequestException as e:
            logger.error(f"{self.provider_name} send to {to_email} failed: {e}")
            return False

        if not self.accepted(response):
            logger.error(f"{self.provider_name} rejected send to {to_email}: {response.status_code} - {response.text[:300]}")
            return False
        return True
