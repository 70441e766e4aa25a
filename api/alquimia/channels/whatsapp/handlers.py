"""Message handler that answers WhatsApp questions through the dashboard chat API."""

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from alquimia.channels.whatsapp.events import phone_from_jid
from alquimia.channels.whatsapp.exceptions import ChatHandlerError
from alquimia.core.config import Settings

logger = logging.getLogger(__name__)


class ChatApiMessageHandler:
    """Forwards a WhatsApp message to the chat endpoint and returns its answer.

    The chat endpoint runs the analytics pipeline (SQL generation, charts,
    prose answer). WhatsApp conversations carry no history.

    Example:
        handler = ChatApiMessageHandler.from_settings(settings)
        reply = await handler("¿Cuánto vendimos ayer?", "56912345678@s.whatsapp.net")
    """

    def __init__(
        self,
        url: str,
        model_provider: str,
        model_id: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        self.url = url
        self.model_provider = model_provider
        self.model_id = model_id
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatApiMessageHandler":
        timeout = settings.WHATSAPP_HANDLER_TIMEOUT_MS / 1000 or 120.0
        return cls(
            url=settings.CHAT_API_URL,
            model_provider=settings.CHAT_MODEL_PROVIDER,
            model_id=settings.CHAT_MODEL_ID,
            timeout=timeout,
        )

    async def __call__(self, text: str, sender: str) -> str:
        payload = {
            "message": text,
            "history": [],
            "modelConfig": {"provider": self.model_provider, "modelId": self.model_id},
            "phoneNumber": phone_from_jid(sender),
        }

        try:
            data = await self._post(payload)
        except httpx.HTTPError as e:
            raise ChatHandlerError(f"Chat API request failed: {e}") from e
        except ValueError as e:
            raise ChatHandlerError("Chat API returned invalid JSON") from e

        if not isinstance(data, dict) or not data.get("success"):
            error = data.get("error") if isinstance(data, dict) else None
            raise ChatHandlerError(f"Chat API error: {error or 'unknown error'}")

        return str(data.get("response") or "")

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, payload: Dict[str, Any]) -> Any:
        response = await self.client.post(self.url, json=payload)
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
