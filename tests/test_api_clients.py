import pytest
import requests
from unittest.mock import MagicMock, patch

from api_clients.base_client import BaseClient
from api_clients.notification_client import NotificationClient
from api_clients.runtime_client import RuntimeClient
from errors import DispatchError, FatalActionError
from models.workflow import Action, ActionType


def _response(status_code, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload
    resp.text = text
    return resp


def test_runtime_client_sends_api_key_and_callback_url():
    client = RuntimeClient("http://runtime.test/api/v1/", api_key="secret", callback_url="http://me/cb")

    assert client.session.headers["X-N8N-API-KEY"] == "secret"
    payload = client.build_payload(
        execution_id="exec-1",
        workflow_id="wf-1",
        action_cursor=2,
        attempt=1,
        action=Action(type=ActionType.CREATE_TICKET, config={"queue": "spa"}),
        context={"subject": "Leak"},
    )
    assert payload["callback_url"] == "http://me/cb"
    assert payload["action"]["type"] == "create_ticket"

    with patch.object(client.session, "post", return_value=_response(200, {"executionId": "n8n-9"})) as post:
        assert client.execute("ticketing", payload) == {"executionId": "n8n-9"}
    assert post.call_args.args[0] == "http://runtime.test/api/v1/workflows/ticketing/execute"


def test_runtime_client_requires_workflow_id():
    client = RuntimeClient("http://runtime.test")
    with pytest.raises(FatalActionError):
        client.execute("", {})


@pytest.mark.parametrize("status_code, error", [
    (500, DispatchError),
    (503, DispatchError),
    (429, DispatchError),
    (408, DispatchError),
    (400, FatalActionError),
    (404, FatalActionError),
])
def test_status_codes_map_to_error_categories(status_code, error):
    client = BaseClient("http://api.test")
    with patch.object(client.session, "post", return_value=_response(status_code, text="nope")):
        with pytest.raises(error):
            client._post("/things", json={})


def test_connection_failure_is_transient():
    client = BaseClient("http://api.test")
    with patch.object(client.session, "post", side_effect=requests.exceptions.ConnectionError("refused")):
        with pytest.raises(DispatchError):
            client._post("/things")


def test_notification_client_posts_to_absolute_url():
    client = NotificationClient()
    with patch.object(client.session, "post", return_value=_response(200, {"ok": True})) as post:
        assert client.notify("https://hooks.example.com/abc", {"message": "hi"}) == {"ok": True}
    assert post.call_args.args[0] == "https://hooks.example.com/abc"
