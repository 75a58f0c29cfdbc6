import asyncio
import logging
from typing import Any, Dict, Optional

from api_clients.base_client import BaseClient

logger = logging.getLogger("automation_service")


class NotificationClient(BaseClient):
    """Posts notify-action payloads to an arbitrary webhook URL."""

    def __init__(self, timeout: float = 15):
        super().__init__("", headers={"Content-Type": "application/json"}, timeout=timeout)

    def notify(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        logger.info(f"Posting notification to {url}")
        return self._post(url, json=payload, headers=headers)

    async def notify_async(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return await asyncio.to_thread(self.notify, url, payload, headers)
