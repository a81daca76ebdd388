"""
Runtime configuration.

All options come from environment variables (a .env file is loaded by
synthcall.main before the first call to get_settings()). Missing optional
credentials never raise here; the services that need them degrade instead.

Python 3.9 compatible - uses typing.Optional
"""

import logging
import os
from enum import Enum
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ValidationMode(str, Enum):
    STRICT = "strict"  # reject when the canonical URL cannot be reconstructed
    PERMISSIVE = "permissive"  # allow + warn in that case


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() == "true"


class Settings(BaseModel):
    """Service configuration settings."""

    # Usage limits
    max_daily_calls: int = 1000
    conversation_ttl_seconds: int = 3600
    rate_limit_ttl_seconds: int = 86400

    # History sanitization
    max_history_messages: int = 20
    max_message_content_length: int = 5000

    # Resilience
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    circuit_failure_threshold: int = 3
    circuit_reset_timeout_ms: int = 30000

    # Inbound validation
    validation_mode: ValidationMode = ValidationMode.PERMISSIVE
    skip_webhook_validation: bool = False
    webhook_base_url: Optional[str] = None

    # Telephony platform
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    sync_service_sid: Optional[str] = None
    voice_intelligence_sid: Optional[str] = None
    store_timeout_seconds: float = 5.0
    voice: str = "Polly.Joanna-Neural"

    # Analytics platform
    segment_write_key: Optional[str] = None

    # Completion service
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"
    openai_timeout_seconds: float = 15.0
    # Upper bound on all completion attempts in one turn; below the ~15 s webhook timeout
    turn_deadline_seconds: float = 12.0

    # Persona data
    persona_data_dir: Optional[str] = None
    persona_base_url: Optional[str] = None
    persona_cache_ttl_seconds: int = 0  # 0 = keep until clear()

    debug: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        mode_raw = os.getenv("WEBHOOK_VALIDATION_MODE", ValidationMode.PERMISSIVE.value).strip().lower()
        try:
            mode = ValidationMode(mode_raw)
        except ValueError:
            logger.warning(f"Unknown WEBHOOK_VALIDATION_MODE={mode_raw!r}, using permissive")
            mode = ValidationMode.PERMISSIVE

        return cls(
            max_daily_calls=_env_int("MAX_DAILY_CALLS", 1000),
            conversation_ttl_seconds=_env_int("CONVERSATION_TTL_SECONDS", 3600),
            rate_limit_ttl_seconds=_env_int("RATE_LIMIT_TTL_SECONDS", 86400),
            max_history_messages=_env_int("MAX_HISTORY_MESSAGES", 20),
            max_message_content_length=_env_int("MAX_MESSAGE_CONTENT_LENGTH", 5000),
            retry_max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 3),
            retry_base_delay_ms=_env_int("RETRY_BASE_DELAY_MS", 1000),
            retry_max_delay_ms=_env_int("RETRY_MAX_DELAY_MS", 10000),
            circuit_failure_threshold=_env_int("CIRCUIT_FAILURE_THRESHOLD", 3),
            circuit_reset_timeout_ms=_env_int("CIRCUIT_RESET_TIMEOUT_MS", 30000),
            validation_mode=mode,
            skip_webhook_validation=_env_bool("SKIP_WEBHOOK_VALIDATION"),
            webhook_base_url=os.getenv("WEBHOOK_BASE_URL") or None,
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
            sync_service_sid=os.getenv("SYNC_SERVICE_SID") or os.getenv("TWILIO_SYNC_SERVICE_SID"),
            voice_intelligence_sid=os.getenv("VOICE_INTELLIGENCE_SID"),
            store_timeout_seconds=float(_env_int("STORE_TIMEOUT_SECONDS", 5)),
            voice=os.getenv("VOICE", "Polly.Joanna-Neural"),
            segment_write_key=os.getenv("SEGMENT_WRITE_KEY"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
            openai_timeout_seconds=float(_env_int("OPENAI_TIMEOUT_SECONDS", 15)),
            turn_deadline_seconds=float(_env_int("TURN_DEADLINE_SECONDS", 12)),
            persona_data_dir=os.getenv("PERSONA_DATA_DIR") or None,
            persona_base_url=os.getenv("PERSONA_BASE_URL") or None,
            persona_cache_ttl_seconds=_env_int("PERSONA_CACHE_TTL_SECONDS", 0),
            debug=_env_bool("DEBUG"),
        )

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)


# Singleton instance (created lazily)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the Settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
