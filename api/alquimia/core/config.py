import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # API settings
    DEBUG: bool = False
    PROJECT_NAME: str = "Alquimia Dashboard API"
    ENVIRONMENT: str = "development"

    # CORS settings - accepts string or list, normalized to list[str] by validator
    CORS_ORIGINS: str | list[str] = "*"

    # Directory settings
    DATA_DIR: str = "api/data"

    # Dashboard chat endpoint that answers WhatsApp questions (tool-calling pipeline)
    CHAT_API_URL: str = "http://localhost:3001/api/chat"
    CHAT_MODEL_PROVIDER: str = "gemini"
    CHAT_MODEL_ID: str = "gemini-2.5-flash"

    # Supabase (remote WhatsApp session storage); empty URL disables remote storage
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_KEY: str = ""
    WHATSAPP_SESSIONS_TABLE: str = "whatsapp_sessions"

    # WhatsApp protocol bridge
    WHATSAPP_ENABLED: bool = True
    WHATSAPP_AUTO_CONNECT: bool = True  # Reconnect on startup when a session exists
    WHATSAPP_BRIDGE_URL: str = "ws://localhost:8091/whatsapp"
    WHATSAPP_BROWSER_NAME: str = "Alquimia Dashboard"

    # WhatsApp reconnection policy
    WHATSAPP_MAX_RECONNECT_ATTEMPTS: int = 10
    WHATSAPP_INITIAL_RETRY_DELAY_MS: int = 2000
    WHATSAPP_MAX_RETRY_DELAY_MS: int = 60000
    WHATSAPP_CONNECTION_TIMEOUT_MS: int = 60000
    WHATSAPP_RESTART_COOLDOWN_MS: int = 2000
    # Close codes that end the session (401 logged out, 428 closed by server)
    WHATSAPP_LOGGED_OUT_CODES: str | list[int] = "401,428"

    # WhatsApp liveness monitor
    WHATSAPP_KEEPALIVE_INTERVAL_MS: int = 30000
    WHATSAPP_LIVENESS_FAILURE_THRESHOLD: int = 3

    # WhatsApp message relay
    WHATSAPP_MESSAGE_SEND_TIMEOUT_MS: int = 30000
    WHATSAPP_SEND_RETRIES: int = 3
    WHATSAPP_SEND_RETRY_DELAY_MS: int = 2000
    WHATSAPP_HANDLER_TIMEOUT_MS: int = 120000  # 0 disables the bound
    WHATSAPP_RECONNECT_WAIT_TICKS: int = 30
    WHATSAPP_ACK_MESSAGE: str = "⏳ Analizando tu consulta, dame un momento..."
    WHATSAPP_FAILURE_MESSAGE: str = (
        "❌ Lo siento, ocurrió un error procesando tu mensaje. "
        "Intenta nuevamente en unos minutos."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
    )

    @property
    def WHATSAPP_AUTH_DIR(self) -> str:
        """Complete path to the WhatsApp credential directory"""
        return os.path.join(self.DATA_DIR, "whatsapp_auth")

    @property
    def SUPABASE_ENABLED(self) -> bool:
        """Whether remote session storage is configured"""
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_KEY)

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Normalize CORS_ORIGINS to a list of origins.

        Accepts either a comma-separated string or a list of strings.

        Args:
            v: Origins as string (comma-separated) or list of strings

        Returns:
            List of origins with whitespace trimmed and empty entries removed
        """
        if isinstance(v, list):
            return [
                origin.strip()
                for origin in v
                if isinstance(origin, str) and origin.strip()
            ]
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return []

    @field_validator("WHATSAPP_LOGGED_OUT_CODES", mode="before")
    @classmethod
    def parse_logged_out_codes(cls, v: str | list[int]) -> list[int]:
        """Normalize WHATSAPP_LOGGED_OUT_CODES to a list of integer status codes.

        Raises:
            ValueError: If an entry is not an integer
        """
        if isinstance(v, int):
            return [v]
        if isinstance(v, str):
            v = [part for part in v.split(",") if part.strip()]
        try:
            return [int(str(code).strip()) for code in v]
        except ValueError as e:
            raise ValueError(
                f"WHATSAPP_LOGGED_OUT_CODES must be integers, got: {v}"
            ) from e

    @field_validator("WHATSAPP_BRIDGE_URL")
    @classmethod
    def validate_bridge_url(cls, v: str) -> str:
        """Require a WebSocket scheme for the protocol bridge URL.

        Raises:
            ValueError: If the URL does not use ws:// or wss://
        """
        v = v.strip()
        if v and not v.startswith(("ws://", "wss://")):
            raise ValueError(
                f"WHATSAPP_BRIDGE_URL must use ws:// or wss://. Got: {v}"
            )
        return v.rstrip("/")

    @field_validator("SUPABASE_URL")
    @classmethod
    def normalize_supabase_url(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("CORS_ORIGINS")
    @classmethod
    def validate_cors_in_production(cls, v: list[str], info: ValidationInfo) -> list[str]:
        """Reject wildcard CORS in production."""
        environment = str(info.data.get("ENVIRONMENT", "development")).lower()
        if environment == "production" and "*" in v:
            raise ValueError("CORS_ORIGINS must not contain '*' in production")
        return v

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Make paths absolute
        self.DATA_DIR = os.path.abspath(self.DATA_DIR)

    def ensure_data_dirs(self) -> None:
        """Create required data directories if they don't exist.

        Called during application startup (lifespan) to avoid import-time I/O.
        """
        Path(self.DATA_DIR).mkdir(parents=True, exist_ok=True)
        Path(self.WHATSAPP_AUTH_DIR).mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached application settings instance with lazy initialization.

    Returns:
        Settings: Application settings object
    """
    return Settings()


def reset_settings() -> None:
    """Reset the cached settings instance (used by tests)."""
    get_settings.cache_clear()
