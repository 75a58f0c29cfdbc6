from typing import Any, Dict, Optional

from senders.base_sender import HTTPSender

DEFAULT_API_URL = "https://api.sendgrid.com/v3/mail/send"


class SendGridSender(HTTPSender):
    provider_name = "sendgrid"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.url = config.get("api_url", DEFAULT_API_URL)

    def build_request(self, from_field, from_email, to_email, subject, html_body, text_body, reply_to, headers):
        sender: Dict[str, Optional[str]] = {"email": from_email}
        if from_field != from_email:
            sender["name"] = from_field.split(" <", 1)[0]

        # SendGrid requires text/plain to precede text/html
        content = []
        if text_body:
            content.append({"type": "text/plain", "value": text_body})
        if html_body:
            content.append({"type": "text/html", "value": html_body})

        payload = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": sender,
            "subject": subject,
            "content": content or [{"type": "text/plain", "value": " "}],
            "headers": headers,
        }
        if reply_to:
            payload["reply_to"] = {"email": reply_to}

        return {
            "url": self.url,
            "json": payload,
            "headers": {"Authorization": f"Bearer {self.api_key}"},
        }
