"""
utils/email_validator_lite.py
─────────────────────────────
Syntax-only address handling for inbound envelopes, sender trigger
conditions and notification recipients. No DNS or SMTP probing.
"""

import re
from email.utils import parseaddr
from typing import Optional

_EMAIL_REGEX = re.compile(
    r'^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$'
)


def is_valid_address(email: str) -> bool:
    if not email:
        return False
    return bool(_EMAIL_REGEX.match(email.strip()))


def normalize_address(raw: Optional[str]) -> Optional[str]:
    """
    Reduces a header value such as 'Jane Doe <Jane@Example.com>' to the bare,
    lower-cased address. Values that do not parse are returned stripped and
    lower-cased so they still compare consistently.
    """
    if not raw:
        return raw
    _, address = parseaddr(raw)
    return (address or raw).strip().lower()
