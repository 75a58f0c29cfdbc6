from enum import Enum
from typing import Any, Dict, List, Type

from senders.base_sender import BaseSender
from senders.mailgun_sender import MailgunSender
from senders.mock_senders import MockSender
from senders.sendgrid_sender import SendGridSender
from senders.smtp_sender import SMTPSender


class EngineType(str, Enum):
    SMTP = "smtp"
    SENDGRID = "sendgrid"
    MAILGUN = "mailgun"
    MOCK = "mock"


SENDERS: Dict[EngineType, Type[BaseSender]] = {
    EngineType.SMTP: SMTPSender,
    EngineType.SENDGRID: SendGridSender,
    EngineType.MAILGUN: MailgunSender,
    EngineType.MOCK: MockSender,
}

# Keys each engine needs on top of 'from_email'
REQUIRED_FIELDS: Dict[EngineType, List[str]] = {
    EngineType.SMTP: ["host"],
    EngineType.SENDGRID: ["api_key"],
    EngineType.MAILGUN: ["api_key", "domain"],
    EngineType.MOCK: [],
}


class EngineBuilder:
    """Builds the delivery engine for local actions from the DELIVERY_ENGINE config block."""

    @staticmethod
    def engine_type(config: Dict[str, Any]) -> EngineType:
        raw = config.get("engine_type")
        if not raw:
            raise ValueError("Missing 'engine_type' in configuration.")
        try:
            return EngineType(str(raw).lower())
        except ValueError:
            raise ValueError(f"Unknown engine_type {raw!r}")

    @staticmethod
    def validate_config(config: Dict[str, Any]) -> EngineType:
        """Raises ValueError if the config cannot build a sender."""
        engine_type = EngineBuilder.engine_type(config)
        if not config.get("from_email"):
            raise ValueError("Missing 'from_email' in configuration.")

        missing = [f for f in REQUIRED_FIELDS[engine_type] if not config.get(f)]
        if len(missing) == 1:
            raise ValueError(f"{engine_type.value} requires '{missing[0]}'")
        if missing:
            raise ValueError(f"{engine_type.value} requires: {missing}")
        return engine_type

    @staticmethod
    def build(engine_config: Dict[str, Any]) -> BaseSender:
        engine_type = EngineBuilder.validate_config(engine_config)
        return SENDERS[engine_type](dict(engine_config))
