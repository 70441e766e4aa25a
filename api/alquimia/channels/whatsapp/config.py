"""WhatsApp channel configuration."""

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from alquimia.core.config import Settings


class WhatsAppConfig(BaseModel):
    """Tunables for the WhatsApp connection manager.

    Durations are kept in milliseconds to match the protocol library's
    conventions; the ``*_seconds`` properties convert for asyncio calls.
    """

    auth_dir: str = "api/data/whatsapp_auth"
    bridge_url: str = "ws://localhost:8091/whatsapp"
    browser_name: str = "Alquimia Dashboard"

    # Reconnection
    max_reconnect_attempts: int = Field(default=10, ge=0)
    initial_retry_delay_ms: int = Field(default=2000, ge=0)
    max_retry_delay_ms: int = Field(default=60000, ge=0)
    connection_timeout_ms: int = Field(default=60000, gt=0)
    restart_cooldown_ms: int = Field(default=2000, ge=0)
    logged_out_codes: List[int] = Field(default_factory=lambda: [401, 428])

    # Liveness
    keepalive_interval_ms: int = Field(default=30000, gt=0)
    liveness_failure_threshold: int = Field(default=3, ge=1)

    # Relay
    message_send_timeout_ms: int = Field(default=30000, gt=0)
    send_retries: int = Field(default=3, ge=1)
    send_retry_delay_ms: int = Field(default=2000, ge=0)
    handler_timeout_ms: int = Field(default=120000, ge=0)
    reconnect_wait_ticks: int = Field(default=30, ge=0)
    reconnect_wait_tick_ms: int = Field(default=1000, gt=0)
    ack_message: str = "⏳ Analizando tu consulta, dame un momento..."
    failure_message: str = (
        "❌ Lo siento, ocurrió un error procesando tu mensaje. "
        "Intenta nuevamente en unos minutos."
    )

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> "WhatsAppConfig":
        if self.max_retry_delay_ms < self.initial_retry_delay_ms:
            raise ValueError(
                "max_retry_delay_ms must be >= initial_retry_delay_ms "
                f"({self.max_retry_delay_ms} < {self.initial_retry_delay_ms})"
            )
        return self

    @property
    def keepalive_interval_seconds(self) -> float:
        return self.keepalive_interval_ms / 1000

    @property
    def message_send_timeout_seconds(self) -> float:
        return self.message_send_timeout_ms / 1000

    @property
    def connection_timeout_seconds(self) -> float:
        return self.connection_timeout_ms / 1000

    @property
    def restart_cooldown_seconds(self) -> float:
        return self.restart_cooldown_ms / 1000

    @property
    def handler_timeout_seconds(self) -> Optional[float]:
        """Handler bound in seconds, or None when unbounded."""
        if not self.handler_timeout_ms:
            return None
        return self.handler_timeout_ms / 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> "WhatsAppConfig":
        """Build the channel configuration from application settings."""
        return cls(
            auth_dir=settings.WHATSAPP_AUTH_DIR,
            bridge_url=settings.WHATSAPP_BRIDGE_URL,
            browser_name=settings.WHATSAPP_BROWSER_NAME,
            max_reconnect_attempts=settings.WHATSAPP_MAX_RECONNECT_ATTEMPTS,
            initial_retry_delay_ms=settings.WHATSAPP_INITIAL_RETRY_DELAY_MS,
            max_retry_delay_ms=settings.WHATSAPP_MAX_RETRY_DELAY_MS,
            connection_timeout_ms=settings.WHATSAPP_CONNECTION_TIMEOUT_MS,
            restart_cooldown_ms=settings.WHATSAPP_RESTART_COOLDOWN_MS,
            logged_out_codes=settings.WHATSAPP_LOGGED_OUT_CODES,
            keepalive_interval_ms=settings.WHATSAPP_KEEPALIVE_INTERVAL_MS,
            liveness_failure_threshold=settings.WHATSAPP_LIVENESS_FAILURE_THRESHOLD,
            message_send_timeout_ms=settings.WHATSAPP_MESSAGE_SEND_TIMEOUT_MS,
            send_retries=settings.WHATSAPP_SEND_RETRIES,
            send_retry_delay_ms=settings.WHATSAPP_SEND_RETRY_DELAY_MS,
            handler_timeout_ms=settings.WHATSAPP_HANDLER_TIMEOUT_MS,
            reconnect_wait_ticks=settings.WHATSAPP_RECONNECT_WAIT_TICKS,
            ack_message=settings.WHATSAPP_ACK_MESSAGE,
            failure_message=settings.WHATSAPP_FAILURE_MESSAGE,
        )
