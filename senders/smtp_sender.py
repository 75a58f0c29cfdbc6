import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Dict, Optional

from .base_sender import BaseSender, format_sender

logger = logging.getLogger("automation_service")


class SMTPSender(BaseSender):
    provider_name = "smtp"

    def __init__(self, config: Dict[str, Any]):
        self.host = config.get("host")
        self.port = config.get("port", 587)
        self.username = config.get("username")
        self.password = config.get("password")
        self.use_tls = config.get("use_tls", True)
        self.timeout = config.get("timeout_seconds", 30)

    def build_message(self, from_email: str, to_email: str, subject: str, html_body: str,
                      text_body: Optional[str] = None, from_name: Optional[str] = None,
                      reply_to: Optional[str] = None, headers: Optional[Dict[str, str]] = None) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = format_sender(from_email, from_name)
        msg["To"] = to_email.strip()
        msg["Message-ID"] = make_msgid(domain=from_email.rsplit("@", 1)[-1] if from_email else None)
        if reply_to:
            msg["Reply-To"] = reply_to
        for key, value in self.merged_headers(headers).items():
            msg[key] = value

        msg.set_content(text_body or "")
        if html_body:
            msg.add_alternative(html_body, subtype="html")
        return msg

    async def send(self, from_email, to_email, subject, html_body, text_body=None, from_name=None, reply_to=None, headers=None) -> bool:
        msg = self.build_message(from_email, to_email, subject, html_body, text_body, from_name, reply_to, headers)
        # smtplib blocks; keep the event loop free
        return await asyncio.to_thread(self._deliver, msg)

    def _deliver(self, msg: EmailMessage) -> bool:
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(msg)
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send to {msg['To']} failed: {e}")
            return False
