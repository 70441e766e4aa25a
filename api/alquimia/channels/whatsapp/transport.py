"""WhatsApp socket abstraction and the WebSocket protocol-bridge implementation.

The WhatsApp Web protocol (Noise handshake, Signal sessions, multi-device
sync) is spoken by a protocol bridge process. This module connects to that
bridge over a single WebSocket, translates its JSON frames into session
events, and exposes the small send surface the relay needs.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from websockets.asyncio.client import connect as _ws_connect
from websockets.exceptions import ConnectionClosed

from alquimia.channels.whatsapp.config import WhatsAppConfig
from alquimia.channels.whatsapp.events import (
    CredentialsUpdated,
    MessageReceived,
    PairingCodeIssued,
    SessionEvent,
    SocketClosed,
    SocketOpened,
    extract_message_text,
)
from alquimia.channels.whatsapp.exceptions import BridgeError

logger = logging.getLogger(__name__)

# WebSocket ready-state values
READY_STATE_CONNECTING = 0
READY_STATE_OPEN = 1
READY_STATE_CLOSING = 2
READY_STATE_CLOSED = 3

EventSink = Callable[[SessionEvent], None]


class WhatsAppSocket(Protocol):
    """The socket surface the supervisor, monitor and relay depend on."""

    @property
    def ready_state(self) -> int: ...

    async def send_message(self, jid: str, text: str) -> None: ...

    async def send_presence_update(self, presence: str, jid: str) -> None: ...

    async def end(self) -> None: ...


class SocketFactory(Protocol):
    async def __call__(
        self, credentials: Mapping[str, Any], emit: EventSink
    ) -> WhatsAppSocket: ...


async def websockets_connect(url: str, **kwargs: Any) -> Any:
    """Connect wrapper for testability."""
    return await _ws_connect(url, **kwargs)


class BridgeSocket:
    """A WhatsApp session hosted by the protocol bridge.

    Example:
        socket = await BridgeSocket.open(url, credentials, emit)
        await socket.send_message("56912345678@s.whatsapp.net", "hola")
    """

    def __init__(self, ws: Any, emit: EventSink):
        self._ws = ws
        self._emit = emit
        self._sequence = 0
        self._pending: Dict[str, asyncio.Future] = {}
        self._reader: Optional[asyncio.Task] = None
        self._ending = False
        self.user_id: Optional[str] = None

    @classmethod
    async def open(
        cls,
        url: str,
        credentials: Mapping[str, Any],
        emit: EventSink,
        browser: tuple[str, str, str] = ("Alquimia Dashboard", "Chrome", "1.0.0"),
        open_timeout: Optional[float] = None,
    ) -> "BridgeSocket":
        """Connect to the bridge and start a session with the given credentials."""
        ws = await websockets_connect(url, open_timeout=open_timeout)
        socket = cls(ws, emit)
        try:
            await ws.send(
                json.dumps(
                    {
                        "action": "init",
                        "auth": dict(credentials),
                        "browser": list(browser),
                        "markOnlineOnConnect": True,
                        "syncFullHistory": False,
                    }
                )
            )
        except BaseException:
            # Covers cancellation by the caller's connect timeout as well
            await ws.close()
            raise
        socket._reader = asyncio.create_task(socket._read_loop())
        logger.info("Connected to WhatsApp bridge at %s", url)
        return socket

    @property
    def ready_state(self) -> int:
        if self._ws is None:
            return READY_STATE_CLOSED
        state = getattr(self._ws, "state", None)
        if state is None:
            return READY_STATE_CLOSED
        return int(state)

    async def send_message(self, jid: str, text: str) -> None:
        await self._request("sendMessage", jid=jid, content={"text": text})

    async def send_presence_update(self, presence: str, jid: str) -> None:
        await self._request("sendPresenceUpdate", presence=presence, jid=jid)

    async def end(self) -> None:
        """Close the bridge connection without emitting a close event."""
        self._ending = True
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception:
                logger.debug("Error closing WhatsApp bridge socket", exc_info=True)
        self._fail_pending(ConnectionError("WhatsApp socket ended"))

    async def _request(self, action: str, **payload: Any) -> Any:
        if self._ws is None or self._ending:
            raise ConnectionError("WhatsApp bridge socket is closed")

        self._sequence += 1
        request_id = str(self._sequence)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(
                json.dumps({"action": action, "requestId": request_id, **payload})
            )
            return await future
        finally:
            self._pending.pop(request_id, None)

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _read_loop(self) -> None:
        reason = "bridge connection closed"
        try:
            while True:
                raw = await self._ws.recv()
                self._handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            reason = f"bridge connection closed: {e}"
            if not self._ending:
                logger.warning("WhatsApp bridge connection closed: %s", e)
        except Exception as e:
            reason = f"bridge read error: {e}"
            logger.exception("WhatsApp bridge read loop failed")
        finally:
            self._fail_pending(ConnectionError(reason))

        if not self._ending:
            self._emit(SocketClosed(status_code=None, reason=reason))

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Received invalid JSON from WhatsApp bridge")
            return

        event = frame.get("event")
        data = frame.get("data") or {}

        if event == "connection.update":
            self._handle_connection_update(data)
        elif event == "creds.update":
            self._emit(CredentialsUpdated(files=data.get("files") or {}))
        elif event == "messages.upsert":
            for message in data.get("messages") or []:
                self._emit(self._parse_message(message))
        elif event == "ack":
            self._resolve_ack(frame)
        else:
            logger.debug("Ignoring WhatsApp bridge event %r", event)

    def _handle_connection_update(self, data: Mapping[str, Any]) -> None:
        qr = data.get("qr")
        if qr:
            self._emit(PairingCodeIssued(code=qr))

        connection = data.get("connection")
        if connection == "open":
            user = data.get("user") or {}
            self.user_id = user.get("id")
            self._emit(SocketOpened(user_id=self.user_id))
        elif connection == "close":
            last_disconnect = data.get("lastDisconnect") or {}
            self._emit(
                SocketClosed(
                    status_code=last_disconnect.get("statusCode"),
                    reason=str(last_disconnect.get("message") or ""),
                )
            )

    @staticmethod
    def _parse_message(message: Mapping[str, Any]) -> MessageReceived:
        key = message.get("key") or {}
        return MessageReceived(
            sender=str(key.get("remoteJid") or ""),
            text=extract_message_text(message.get("message")),
            from_me=bool(key.get("fromMe")),
            message_id=key.get("id"),
        )

    def _resolve_ack(self, frame: Mapping[str, Any]) -> None:
        future = self._pending.get(str(frame.get("requestId")))
        if future is None or future.done():
            return
        if frame.get("ok", True):
            future.set_result(frame.get("data"))
        else:
            future.set_exception(BridgeError(str(frame.get("error") or "bridge error")))


class BridgeSocketFactory:
    """Default socket factory: one bridge connection per supervisor connect."""

    def __init__(self, config: WhatsAppConfig):
        self.config = config

    async def __call__(
        self, credentials: Mapping[str, Any], emit: EventSink
    ) -> BridgeSocket:
        return await BridgeSocket.open(
            self.config.bridge_url,
            credentials,
            emit,
            browser=(self.config.browser_name, "Chrome", "1.0.0"),
            open_timeout=self.config.connection_timeout_seconds,
        )
