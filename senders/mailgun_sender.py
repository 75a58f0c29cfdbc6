from typing import Any, Dict

from .base_sender import HTTPSender


class MailgunSender(HTTPSender):
    """Mailgun messages API; custom headers travel as `h:` form fields."""

    provider_name = "mailgun"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.domain = config.get("domain")
        if not self.domain or not self.api_key:
            raise ValueError("Mailgun requires 'domain' and 'api_key'")
        base = config.get("api_base", "https://api.mailgun.net/v3").rstrip("/")
        self.api_url = f"{base}/{self.domain}/messages"

    def build_request(self, from_field, from_email, to_email, subject, html_body, text_body, reply_to, headers):
        data = {"from": from_field, "to": to_email, "subject": subject}
        if text_body:
            data["text"] = text_body
        if html_body:
            data["html"] = html_body
        if reply_to:
            data["h:Reply-To"] = reply_to
        data.update({f"h:{key}": value for key, value in headers.items()})
        return {"url": self.api_url, "auth": ("api", self.api_key), "data": data}
