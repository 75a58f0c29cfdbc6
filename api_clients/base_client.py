import requests
from typing import Any, Dict, Optional
import logging

from errors import DispatchError, FatalActionError

logger = logging.getLogger("automation_service")

# 4xx responses that are worth retrying
RETRYABLE_STATUS_CODES = {408, 429}


class BaseClient:
    """
    Thin requests.Session wrapper for outbound HTTP. Transport failures and
    5xx responses raise DispatchError; any other 4xx raises FatalActionError.
    """

    def __init__(self, base_url: str = "", headers: Optional[Dict[str, str]] = None, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        if headers:
            self.session.headers.update(headers)

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}{endpoint}"

    def _check(self, method: str, endpoint: str, resp: requests.Response) -> None:
        if resp.status_code < 400:
            return
        detail = resp.text[:500] if resp.text else ""
        message = f"{method} {endpoint} returned {resp.status_code}: {detail}"
        logger.error(message)
        if resp.status_code >= 500 or resp.status_code in RETRYABLE_STATUS_CODES:
            raise DispatchError(message, {"status_code": resp.status_code})
        raise FatalActionError(message, {"status_code": resp.status_code})

    @staticmethod
    def _json(resp: requests.Response) -> Dict[str, Any]:
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            return {"raw": resp.text}
        return data if isinstance(data, dict) else {"data": data}

    def _post(self, endpoint: str, json: Optional[Dict] = None, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            resp = self.session.post(self._url(endpoint), json=json, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"POST {endpoint} failed: {e}")
            raise DispatchError(f"POST {endpoint} failed: {e}")
        self._check("POST", endpoint, resp)
        return self._json(resp)

    def _get(self, endpoint: str, params: Optional[Dict] = None) -> Dict[str, Any]:
        try:
            resp = self.session.get(self._url(endpoint), params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"GET {endpoint} failed: {e}")
            raise DispatchError(f"GET {endpoint} failed: {e}")
        self._check("GET", endpoint, resp)
        return self._json(resp)
