"""Inbound WhatsApp message relay with provisional replies and send retries."""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Set

from alquimia.channels.whatsapp.events import MessageReceived
from alquimia.channels.whatsapp.exceptions import (
    MessageSendTimeoutError,
    NotConnectedError,
)
from alquimia.channels.whatsapp.metrics import (
    whatsapp_handler_duration_seconds,
    whatsapp_messages_total,
    whatsapp_send_failures_total,
    whatsapp_send_retries_total,
)
from alquimia.channels.whatsapp.transport import READY_STATE_OPEN, WhatsAppSocket
from alquimia.utils.logging import mask_identifier, redact_pii

if TYPE_CHECKING:
    from alquimia.channels.whatsapp.config import WhatsAppConfig
    from alquimia.channels.whatsapp.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

# handler(text, sender_jid) -> reply text
MessageHandler = Callable[[str, str], Awaitable[str]]


class MessageRelay:
    """Relays inbound messages to the injected handler and sends the replies.

    Each inbound message is processed in its own task, so a slow answer
    never holds back the next message; replies may go out of arrival order.
    """

    def __init__(self, supervisor: "ConnectionSupervisor"):
        self.supervisor = supervisor
        self._tasks: Set[asyncio.Task] = set()

    @property
    def config(self) -> "WhatsAppConfig":
        return self.supervisor.config

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def handle_inbound(
        self, event: MessageReceived, handler: Optional[MessageHandler]
    ) -> Optional[asyncio.Task]:
        """Record an inbound message and start relaying it.

        Returns:
            The background task processing the message, or None when the
            message is ignored
        """
        if event.from_me or not event.text.strip():
            return None
        if handler is None:
            logger.warning("WhatsApp message received with no handler registered")
            return None

        state = self.supervisor.state
        state.messages_received += 1
        state.touch()
        whatsapp_messages_total.labels(direction="inbound").inc()
        logger.info(
            f"WhatsApp message from {mask_identifier(event.sender)}: "
            f"{redact_pii(event.text)}"
        )

        task = asyncio.create_task(self._relay(event, handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _relay(self, event: MessageReceived, handler: MessageHandler) -> None:
        await self._send_typing(event.sender)

        try:
            await self.send_with_retry(event.sender, self.config.ack_message)
        except Exception as e:
            whatsapp_send_failures_total.labels(kind="ack").inc()
            logger.warning(
                f"Provisional reply to {mask_identifier(event.sender)} failed: {e}"
            )

        reply = await self._run_handler(handler, event.text, event.sender)
        if reply is None:
            await self._deliver(event.sender, self.config.failure_message, "apology")
        else:
            await self._deliver(event.sender, reply, "reply")

    async def _run_handler(
        self, handler: MessageHandler, text: str, sender: str
    ) -> Optional[str]:
        """Invoke the handler; None means it failed and an apology is due."""
        state = self.supervisor.state
        timeout = self.config.handler_timeout_seconds
        started = time.monotonic()
        try:
            if timeout is None:
                reply = await handler(text, sender)
            else:
                reply = await asyncio.wait_for(handler(text, sender), timeout=timeout)
        except asyncio.TimeoutError:
            whatsapp_handler_duration_seconds.labels(result="failure").observe(
                time.monotonic() - started
            )
            logger.error(
                f"Message handler timed out after {timeout:g}s for "
                f"{mask_identifier(sender)}"
            )
            state.record_error("handler", f"Handler timed out after {timeout:g}s")
            return None
        except Exception as e:
            whatsapp_handler_duration_seconds.labels(result="failure").observe(
                time.monotonic() - started
            )
            logger.error(
                f"Message handler failed for {mask_identifier(sender)}: {e}",
                exc_info=True,
            )
            state.record_error("handler", e)
            return None

        whatsapp_handler_duration_seconds.labels(result="success").observe(
            time.monotonic() - started
        )
        if reply is None or not str(reply).strip():
            logger.warning(f"Message handler returned an empty reply for {mask_identifier(sender)}")
            state.record_error("handler", "Handler returned an empty reply")
            return None
        return str(reply)

    async def _deliver(self, jid: str, text: str, kind: str) -> bool:
        state = self.supervisor.state
        if not await self.wait_for_connection():
            whatsapp_send_failures_total.labels(kind=kind).inc()
            logger.error(
                f"WhatsApp connection not restored; {kind} to "
                f"{mask_identifier(jid)} not delivered"
            )
            state.record_error("send", f"Connection not restored; {kind} not delivered")
            return False

        try:
            await self.send_with_retry(jid, text)
        except Exception as e:
            whatsapp_send_failures_total.labels(kind=kind).inc()
            logger.error(f"Failed to send {kind} to {mask_identifier(jid)}: {e}")
            state.record_error("send", e)
            if kind == "reply":
                return await self._send_apology(jid)
            return False

        logger.info(f"WhatsApp {kind} sent to {mask_identifier(jid)}")
        return True

    async def _send_apology(self, jid: str) -> bool:
        try:
            await self.send_with_retry(jid, self.config.failure_message, retries=1)
            return True
        except Exception as e:
            whatsapp_send_failures_total.labels(kind="apology").inc()
            logger.error(f"Failed to send failure notice to {mask_identifier(jid)}: {e}")
            return False

    async def _send_typing(self, jid: str) -> None:
        socket = self.supervisor.socket
        if socket is None:
            return
        try:
            await asyncio.wait_for(
                socket.send_presence_update("composing", jid),
                timeout=self.config.message_send_timeout_seconds,
            )
        except Exception as e:
            logger.debug(f"Typing indicator failed for {mask_identifier(jid)}: {e}")

    async def wait_for_connection(self) -> bool:
        """Wait up to ``reconnect_wait_ticks`` ticks for the socket to reopen."""
        if self.supervisor.is_open:
            return True

        logger.warning("WhatsApp disconnected before reply; waiting for reconnection...")
        tick_seconds = self.config.reconnect_wait_tick_ms / 1000
        for _ in range(self.config.reconnect_wait_ticks):
            await asyncio.sleep(tick_seconds)
            if self.supervisor.is_open:
                logger.info("WhatsApp reconnected; resuming reply")
                return True
        return False

    def _require_open_socket(self) -> WhatsAppSocket:
        socket = self.supervisor.socket
        if socket is None:
            raise NotConnectedError("WhatsApp socket is not initialized")
        if not self.supervisor.state.connected:
            raise NotConnectedError("WhatsApp is not connected")
        if socket.ready_state != READY_STATE_OPEN:
            raise NotConnectedError(
                f"WhatsApp socket is not open (state: {socket.ready_state})"
            )
        return socket

    async def send_with_retry(
        self, jid: str, text: str, retries: Optional[int] = None
    ) -> None:
        """Send a text message, retrying timeouts and send errors.

        Connection preconditions are checked before every attempt and fail
        fast with NotConnectedError. Timeouts and send errors wait
        ``attempt * send_retry_delay`` before the next attempt.

        Raises:
            NotConnectedError: If the socket is missing or not open
            MessageSendTimeoutError: If the last attempt timed out
            Exception: The last send error once retries are exhausted
        """
        retries = self.config.send_retries if retries is None else retries
        timeout = self.config.message_send_timeout_seconds
        last_error: Optional[Exception] = None

        for attempt in range(1, retries + 1):
            socket = self._require_open_socket()
            try:
                await asyncio.wait_for(socket.send_message(jid, text), timeout=timeout)
            except asyncio.TimeoutError:
                last_error = MessageSendTimeoutError(timeout)
            except Exception as e:
                last_error = e
            else:
                state = self.supervisor.state
                state.messages_sent += 1
                state.touch()
                whatsapp_messages_total.labels(direction="outbound").inc()
                return

            logger.warning(
                f"WhatsApp send attempt {attempt}/{retries} to "
                f"{mask_identifier(jid)} failed: {last_error}"
            )
            if attempt < retries:
                whatsapp_send_retries_total.inc()
                await asyncio.sleep(attempt * self.config.send_retry_delay_ms / 1000)

        raise last_error or NotConnectedError("WhatsApp send was not attempted")

    async def drain(self) -> None:
        """Wait for all in-flight messages to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
