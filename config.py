import os
import json
import logging
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger("automation_service")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {raw!r}. Using default {default}.")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = "sqlite:///./automation.db"

    # External automation runtime (n8n compatible)
    runtime_api_url: str = "http://localhost:5678/api/v1"
    runtime_api_key: str = ""
    runtime_webhook_secret: str = "change-me-runtime"
    mail_webhook_secret: str = "change-me-mail"
    public_base_url: str = "http://localhost:8050"

    default_callback_timeout_seconds: int = Field(300, ge=1, le=3600)
    signature_max_age_seconds: int = 300

    # Boundary rate limiting
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 900

    resume_interval_seconds: int = 30
    # how long a worker owns a local send it has claimed
    dispatch_lease_seconds: int = Field(300, ge=1)
    retry_jitter: bool = False

    # Delivery engine used by local send_auto_reply / notify actions
    delivery_engine: Dict[str, Any] = Field(default_factory=lambda: {
        "engine_type": "mock",
        "from_email": "noreply@example.com",
        "rate_limit_per_minute": 60,
    })

    classifier_config_path: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def runtime_callback_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/v1/webhooks/runtime"

    @classmethod
    def from_env(cls) -> "Settings":
        """Builds settings from environment variables, falling back to defaults."""
        defaults = cls()

        delivery_engine = defaults.delivery_engine
        raw_engine = os.getenv("DELIVERY_ENGINE_JSON")
        if raw_engine:
            try:
                delivery_engine = json.loads(raw_engine)
            except json.JSONDecodeError as e:
                logger.error(f"DELIVERY_ENGINE_JSON is not valid JSON: {e}. Using mock engine.")

        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            runtime_api_url=os.getenv("RUNTIME_API_URL", defaults.runtime_api_url),
            runtime_api_key=os.getenv("RUNTIME_API_KEY", defaults.runtime_api_key),
            runtime_webhook_secret=os.getenv("RUNTIME_WEBHOOK_SECRET", defaults.runtime_webhook_secret),
            mail_webhook_secret=os.getenv("MAIL_WEBHOOK_SECRET", defaults.mail_webhook_secret),
            public_base_url=os.getenv("PUBLIC_BASE_URL", defaults.public_base_url),
            default_callback_timeout_seconds=_env_int(
                "DEFAULT_CALLBACK_TIMEOUT_SECONDS", defaults.default_callback_timeout_seconds
            ),
            signature_max_age_seconds=_env_int("SIGNATURE_MAX_AGE_SECONDS", defaults.signature_max_age_seconds),
            rate_limit_requests=_env_int("RATE_LIMIT_REQUESTS", defaults.rate_limit_requests),
            rate_limit_window_seconds=_env_int("RATE_LIMIT_WINDOW_SECONDS", defaults.rate_limit_window_seconds),
            resume_interval_seconds=_env_int("RESUME_INTERVAL_SECONDS", defaults.resume_interval_seconds),
            dispatch_lease_seconds=_env_int("DISPATCH_LEASE_SECONDS", defaults.dispatch_lease_seconds),
            retry_jitter=_env_bool("RETRY_JITTER", defaults.retry_jitter),
            delivery_engine=delivery_engine,
            classifier_config_path=os.getenv("CLASSIFIER_CONFIG_PATH") or None,
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
            log_file=os.getenv("LOG_FILE") or None,
        )
