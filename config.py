"""Service settings read from the environment.

The environment is read once, when this module is first imported, so tests
set their variables before importing anything from the project.

    from config import settings
    settings.base_url
"""

import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class Settings:
    """All environment variables used by the call-flow service."""

    # ---- Server ----
    port: int = 8080
    base_url: str = ""
    admin_url: str = ""
    environment: str = "development"
    log_level: str = ""

    # ---- Database ----
    database_url: str = ""  # Required in production

    # ---- Twilio ----
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # ---- Speech / transcription ----
    openai_api_key: str = ""
    tts_model: str = "gpt-4o-mini-tts"
    transcription_model: str = "gpt-4o-transcribe-diarize"

    # ---- Media ----
    media_dir: str = "media"
    media_base_url: str = ""

    # ---- Auth ----
    jwt_secret: str = "callflow-secret-change-me"
    api_key: str = ""

    # ---- Monitoring ----
    sentry_dsn: str = ""

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache(maxsize=1)
def _load_settings() -> Settings:
    """Load settings from environment. Cached after first call."""

    def _env(key: str, default: str = "") -> str:
        return os.environ.get(key, default)

    base_url = _env("BASE_URL").rstrip("/")
    environment = _env("ENVIRONMENT", "development")

    return Settings(
        # Server
        port=int(_env("PORT", "8080")),
        base_url=base_url,
        admin_url=_env("ADMIN_URL"),
        environment=environment,
        log_level=_env("LOG_LEVEL", "INFO" if environment == "production" else "DEBUG"),
        # Database
        database_url=_env("DATABASE_URL"),
        # Twilio
        twilio_account_sid=_env("TWILIO_ACCOUNT_SID"),
        twilio_auth_token=_env("TWILIO_AUTH_TOKEN"),
        twilio_phone_number=_env("TWILIO_PHONE_NUMBER"),
        # Speech / transcription
        openai_api_key=_env("OPENAI_API_KEY"),
        tts_model=_env("TTS_MODEL", "gpt-4o-mini-tts"),
        transcription_model=_env("TRANSCRIPTION_MODEL", "gpt-4o-transcribe-diarize"),
        # Media
        media_dir=_env("MEDIA_DIR", "media"),
        media_base_url=_env("MEDIA_BASE_URL", f"{base_url}/media").rstrip("/"),
        # Auth
        jwt_secret=_env("JWT_SECRET", "callflow-secret-change-me"),
        api_key=_env("API_KEY"),
        # Monitoring
        sentry_dsn=_env("SENTRY_DSN"),
    )


settings = _load_settings()
