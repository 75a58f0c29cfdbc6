import asyncio
import logging
from typing import Any, Dict

from api_clients.base_client import BaseClient
from errors import FatalActionError
from models.workflow import Action

logger = logging.getLogger("automation_service")


class RuntimeClient(BaseClient):
    """
    Dispatch side of the external automation runtime (n8n compatible).
    Completion arrives later through the runtime webhook.
    """

    def __init__(self, base_url: str, api_key: str = "", callback_url: str = "", timeout: float = 30):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-N8N-API-KEY"] = api_key
        super().__init__(base_url, headers=headers, timeout=timeout)
        self.callback_url = callback_url

    def build_payload(
        self,
        execution_id: str,
        workflow_id: str,
        action_cursor: int,
        attempt: int,
        action: Action,
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        return {
            "execution_id": execution_id,
            "workflow_id": workflow_id,
            "action_cursor": action_cursor,
            "attempt": attempt,
            "action": action.model_dump(mode="json"),
            "context": context,
            "callback_url": self.callback_url,
        }

    def execute(self, runtime_workflow_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not runtime_workflow_id:
            raise FatalActionError("Action config is missing 'runtime_workflow_id'")
        logger.info(
            f"Dispatching action {payload.get('action_cursor')} of execution {payload.get('execution_id')} "
            f"to runtime workflow {runtime_workflow_id}"
        )
        return self._post(f"/workflows/{runtime_workflow_id}/execute", json=payload)

    async def execute_async(self, runtime_workflow_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self.execute, runtime_workflow_id, payload)
