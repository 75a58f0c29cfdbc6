import hashlib
import hmac
import time
from typing import Callable, Optional, Union

from errors import SignatureError

Body = Union[str, bytes]


def _as_bytes(body: Body) -> bytes:
    return body.encode() if isinstance(body, str) else body


def sign_runtime(secret: str, body: Body, timestamp: int) -> str:
    """Signature for runtime callbacks: sha256=HMAC(secret, "{timestamp}.{body}")."""
    message = f"{timestamp}.".encode() + _as_bytes(body)
    digest = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def sign_mail(secret: str, body: Body) -> str:
    """Signature for mail-provider webhooks: hex HMAC(secret, body)."""
    return hmac.new(secret.encode(), _as_bytes(body), hashlib.sha256).hexdigest()


def verify_runtime(
    secret: str,
    body: Body,
    signature: Optional[str],
    timestamp: Optional[str],
    max_age: int = 300,
    clock: Callable[[], float] = time.time,
) -> None:
    """Raises SignatureError unless the signature matches and the timestamp is fresh."""
    if not signature or not timestamp:
        raise SignatureError("Missing runtime signature or timestamp")
    try:
        ts = int(timestamp)
    except ValueError:
        raise SignatureError("Malformed runtime signature timestamp")

    # replay protection
    if abs(int(clock()) - ts) > max_age:
        raise SignatureError("Runtime signature timestamp outside the accepted window")

    expected = sign_runtime(secret, body, ts)
    if not hmac.compare_digest(signature.strip(), expected):
        raise SignatureError("Runtime signature mismatch")


def verify_mail(secret: str, body: Body, signature: Optional[str]) -> None:
    if not signature:
        raise SignatureError("Missing mail signature")
    expected = sign_mail(secret, body)
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    if not hmac.compare_digest(provided, expected):
        raise SignatureError("Mail signature mismatch")
