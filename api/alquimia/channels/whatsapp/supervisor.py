"""WhatsApp connection supervisor.

Owns the single logical WhatsApp connection: creates and destroys the
socket, consumes its session events on one event loop task, and drives the
reconnection state machine::

    IDLE -> CONNECTING -> AWAITING_PAIRING | OPEN -> CLOSED -> CONNECTING ...
                                                  \\-> LOGGED_OUT (terminal)
"""

import asyncio
import logging
from contextlib import suppress
from typing import Any, Callable, Coroutine, Optional, Set, Tuple

from alquimia.channels.whatsapp.config import WhatsAppConfig
from alquimia.channels.whatsapp.events import (
    CloseDisposition,
    CredentialsUpdated,
    MessageReceived,
    PairingCodeIssued,
    SessionEvent,
    SocketClosed,
    SocketOpened,
    classify_close,
    describe_close,
    phone_from_jid,
)
from alquimia.channels.whatsapp.metrics import (
    whatsapp_connection_status,
    whatsapp_forced_reconnects_total,
    whatsapp_pairing_codes_total,
    whatsapp_reconnects_scheduled_total,
    whatsapp_session_closes_total,
    whatsapp_session_persist_total,
)
from alquimia.channels.whatsapp.models import ConnectionStatus, OperationResult
from alquimia.channels.whatsapp.monitor import LivenessMonitor
from alquimia.channels.whatsapp.pairing import render_pairing_code
from alquimia.channels.whatsapp.relay import MessageHandler, MessageRelay
from alquimia.channels.whatsapp.session_store import SessionStore
from alquimia.channels.whatsapp.state import ConnectionPhase, ConnectionState, utcnow
from alquimia.channels.whatsapp.transport import (
    READY_STATE_OPEN,
    BridgeSocketFactory,
    SocketFactory,
    WhatsAppSocket,
)
from alquimia.utils.logging import mask_identifier

logger = logging.getLogger(__name__)

CONNECTION_IN_PROGRESS = "Connection already in progress"


def compute_backoff(attempt: int, initial_delay_ms: int, max_delay_ms: int) -> int:
    """Reconnect delay for ``attempt`` prior attempts: exponential, capped."""
    return min(initial_delay_ms * (2**attempt), max_delay_ms)


class ConnectionSupervisor:
    """Manages the WhatsApp connection lifecycle.

    Provides:
    - Guarded connect (one socket at a time)
    - Pairing code handling and credential persistence
    - Exponential-backoff reconnection with an attempt cap
    - Liveness monitoring and message relaying through its collaborators

    Attributes:
        config: Channel configuration
        session_store: Credential persistence
        state: Connection state, written only by the supervisor, monitor and relay
        socket: The current socket, or None
        is_connecting: Guard flag set while ``connect()`` is in flight
        monitor: Liveness monitor bound to this supervisor
        relay: Message relay bound to this supervisor
    """

    def __init__(
        self,
        config: WhatsAppConfig,
        session_store: SessionStore,
        socket_factory: Optional[SocketFactory] = None,
        pairing_renderer: Callable[[str], str] = render_pairing_code,
    ):
        self.config = config
        self.session_store = session_store
        self.socket_factory = socket_factory or BridgeSocketFactory(config)
        self.pairing_renderer = pairing_renderer
        self.state = ConnectionState()
        self.socket: Optional[WhatsAppSocket] = None
        self.is_connecting = False
        self.next_reconnect_delay_ms: Optional[int] = None
        self.monitor = LivenessMonitor(self)
        self.relay = MessageRelay(self)

        self._handler: Optional[MessageHandler] = None
        self._generation = 0
        self._events: "asyncio.Queue[Tuple[int, SessionEvent]]" = asyncio.Queue()
        self._event_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def is_open(self) -> bool:
        """Socket present, marked connected, and transport open."""
        return (
            self.socket is not None
            and self.state.connected
            and self.socket.ready_state == READY_STATE_OPEN
        )

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def has_stored_session(self) -> bool:
        return self.session_store.has_stored_session()

    def get_status(self) -> ConnectionStatus:
        return ConnectionStatus.from_state(self.state)

    # Control operations

    async def connect(self, handler: MessageHandler) -> OperationResult:
        """Open a new socket, restoring credentials when available.

        A call made while another connect is in flight is rejected instead of
        racing a second socket. Failures schedule a backoff reconnect.
        """
        if self.is_connecting:
            logger.warning("WhatsApp connect requested while a connection is in progress")
            return OperationResult(success=False, message=CONNECTION_IN_PROGRESS)

        self.is_connecting = True
        self.state.connecting = True
        self._handler = handler
        self._cancel_pending_reconnect()
        self._ensure_event_consumer()
        logger.info("Starting WhatsApp connection...")

        try:
            await self._teardown_socket()
            self.monitor.stop()
            if self.state.connected:
                self.state.connected = False
                self.state.last_disconnected = utcnow()
                whatsapp_connection_status.set(0)

            if not self.session_store.has_stored_session() and self.session_store.remote_enabled:
                await self.session_store.load_session_from_remote()
            credentials = await asyncio.to_thread(self.session_store.read_credentials)

            generation = self._generation
            self.state.phase = ConnectionPhase.CONNECTING
            socket = await asyncio.wait_for(
                self.socket_factory(
                    credentials, lambda event: self._post(generation, event)
                ),
                timeout=self.config.connection_timeout_seconds,
            )

            if generation != self._generation:
                # disconnect() ran while the socket was being created
                await self._end_socket(socket)
                return OperationResult(success=False, message="Connection cancelled")

            self.socket = socket
            return OperationResult(success=True, message="Connecting to WhatsApp")

        except Exception as e:
            logger.error(f"WhatsApp connection failed: {e}")
            self.state.record_error("connect", e)
            self.state.phase = ConnectionPhase.CLOSED
            self._schedule_reconnect()
            return OperationResult(success=False, message=str(e) or type(e).__name__)

        finally:
            self.is_connecting = False
            self.state.connecting = False

    async def disconnect(self) -> OperationResult:
        """Close the socket and reset transient state.

        Persisted credentials are kept so the next connect resumes the session.
        """
        self._cancel_pending_reconnect()
        self.monitor.stop()
        await self._teardown_socket()
        self._handler = None

        self.state.connected = False
        self.state.phase = ConnectionPhase.IDLE
        self.state.last_disconnected = utcnow()
        self.state.pending_pairing_code = None
        self.state.reconnect_attempts = 0
        self.next_reconnect_delay_ms = None
        whatsapp_connection_status.set(0)

        logger.info("WhatsApp disconnected (credentials preserved)")
        return OperationResult(success=True, message="WhatsApp disconnected")

    async def restart(self, handler: MessageHandler) -> OperationResult:
        await self.disconnect()
        await asyncio.sleep(self.config.restart_cooldown_seconds)
        return await self.connect(handler)

    async def clear_session(self) -> OperationResult:
        """Disconnect, delete local and remote credentials, reset state.

        The remote row is found through the paired identity in the local
        credentials, so a session that never opened in this process is
        removed too.
        """
        await self.disconnect()
        # Let in-flight remote saves land first; one finishing after the
        # delete would bring the row back
        pending = [task for task in self._background if task is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        stored_identifier = await asyncio.to_thread(self.session_store.stored_identifier)
        identifiers = sorted(
            {i for i in (stored_identifier, self.state.phone_identifier) if i}
        )

        cleared = await asyncio.to_thread(self.session_store.clear_local)
        for identifier in identifiers:
            await self.session_store.delete_remote_session(identifier)
        self.state = ConnectionState()

        if not cleared:
            return OperationResult(
                success=False, message="Failed to remove stored WhatsApp session"
            )
        logger.info("WhatsApp session cleared")
        return OperationResult(success=True, message="WhatsApp session cleared")

    async def force_reconnect(self) -> Optional[OperationResult]:
        """Replace a dead socket; no-op once the channel has been disconnected."""
        handler = self._handler
        if handler is None:
            logger.info("Skipping forced WhatsApp reconnect: channel is disconnected")
            return None

        whatsapp_forced_reconnects_total.inc()
        self.monitor.stop()
        await self._teardown_socket()
        self.state.connected = False
        self.state.last_disconnected = utcnow()
        whatsapp_connection_status.set(0)
        return await self.connect(handler)

    async def shutdown(self) -> None:
        """Stop every background task and close the socket."""
        await self.disconnect()
        await self.relay.shutdown()
        await self._cancel_background()

        if self._event_task is not None:
            self._event_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._event_task
            self._event_task = None

    # Event handling

    async def wait_for_events(self) -> None:
        """Wait until every queued session event has been handled."""
        await self._events.join()

    async def handle_event(self, event: SessionEvent) -> None:
        if isinstance(event, PairingCodeIssued):
            await self._on_pairing_code(event)
        elif isinstance(event, SocketOpened):
            self._on_open(event)
        elif isinstance(event, SocketClosed):
            await self._on_close(event)
        elif isinstance(event, MessageReceived):
            self.relay.handle_inbound(event, self._handler)
        elif isinstance(event, CredentialsUpdated):
            await self._on_credentials(event)
        else:
            logger.debug(f"Ignoring unknown WhatsApp event {event!r}")

    def _post(self, generation: int, event: SessionEvent) -> None:
        self._events.put_nowait((generation, event))

    def _ensure_event_consumer(self) -> None:
        if self._event_task is None or self._event_task.done():
            self._event_task = asyncio.create_task(self._consume_events())

    async def _consume_events(self) -> None:
        while True:
            generation, event = await self._events.get()
            try:
                if generation != self._generation:
                    logger.debug(
                        f"Dropping {type(event).__name__} from a replaced WhatsApp socket"
                    )
                    continue
                await self.handle_event(event)
            except Exception:
                logger.exception(f"Error handling WhatsApp event {type(event).__name__}")
            finally:
                self._events.task_done()

    async def _on_pairing_code(self, event: PairingCodeIssued) -> None:
        self.state.pending_pairing_code = await asyncio.to_thread(
            self.pairing_renderer, event.code
        )
        # A fresh code means the user is re-pairing, not that connecting fails
        self.state.reconnect_attempts = 0
        self.state.phase = ConnectionPhase.AWAITING_PAIRING
        whatsapp_pairing_codes_total.inc()
        logger.info("New WhatsApp pairing code generated")

    def _on_open(self, event: SocketOpened) -> None:
        now = utcnow()
        self.state.connected = True
        self.state.phase = ConnectionPhase.OPEN
        self.state.last_connected = now
        self.state.last_activity = now
        self.state.pending_pairing_code = None
        self.state.reconnect_attempts = 0
        self.next_reconnect_delay_ms = None
        whatsapp_connection_status.set(1)

        user_id = event.user_id or getattr(self.socket, "user_id", None)
        if user_id:
            self.state.phone_identifier = phone_from_jid(user_id)
        logger.info(
            f"Connected to WhatsApp as {mask_identifier(self.state.phone_identifier)}"
        )

        self.monitor.start()
        if self.state.phone_identifier and self.session_store.remote_enabled:
            self._spawn(
                self.session_store.save_session_to_remote(self.state.phone_identifier)
            )

    async def _on_close(self, event: SocketClosed) -> None:
        disposition = classify_close(event.status_code, self.config.logged_out_codes)
        logger.warning(
            f"WhatsApp connection closed (code={event.status_code}, "
            f"{describe_close(event.status_code)}) {event.reason}".rstrip()
        )

        self.monitor.stop()
        await self._teardown_socket()
        self.state.connected = False
        self.state.last_disconnected = utcnow()
        self.state.pending_pairing_code = None
        whatsapp_connection_status.set(0)
        whatsapp_session_closes_total.labels(disposition=disposition.value).inc()

        if disposition is CloseDisposition.LOGGED_OUT:
            self.state.phase = ConnectionPhase.LOGGED_OUT
            self.state.reconnect_attempts = 0
            self.next_reconnect_delay_ms = None
            self.state.record_error(
                "session",
                f"Logged out (code {event.status_code}); a new pairing code is required",
            )
            logger.error("WhatsApp session logged out; a new pairing code is required")
            return

        self.state.phase = ConnectionPhase.CLOSED
        self._schedule_reconnect()

    async def _on_credentials(self, event: CredentialsUpdated) -> None:
        if not event.files:
            return
        try:
            await asyncio.to_thread(self.session_store.write_credentials, event.files)
            whatsapp_session_persist_total.labels(target="local", result="success").inc()
        except Exception as e:
            whatsapp_session_persist_total.labels(target="local", result="failure").inc()
            logger.error(f"Failed to persist WhatsApp credentials: {e}")
            self.state.record_error("session", e)

    # Reconnection

    def _schedule_reconnect(self) -> Optional[int]:
        """Schedule a backoff reconnect.

        Returns:
            The delay in milliseconds, or None when no reconnect was scheduled
        """
        handler = self._handler
        if handler is None:
            return None

        attempts = self.state.reconnect_attempts
        if attempts >= self.config.max_reconnect_attempts:
            logger.error(
                f"Maximum WhatsApp reconnect attempts reached "
                f"({self.config.max_reconnect_attempts}); manual reconnect required"
            )
            self.state.reconnect_attempts = 0
            self.next_reconnect_delay_ms = None
            self.state.record_error("connect", "Maximum reconnect attempts reached")
            return None

        delay_ms = compute_backoff(
            attempts, self.config.initial_retry_delay_ms, self.config.max_retry_delay_ms
        )
        self.state.reconnect_attempts = attempts + 1
        self.next_reconnect_delay_ms = delay_ms
        whatsapp_reconnects_scheduled_total.inc()
        logger.info(
            f"Reconnecting to WhatsApp in {delay_ms}ms "
            f"(attempt {attempts + 1}/{self.config.max_reconnect_attempts})"
        )

        self._cancel_pending_reconnect()
        self._reconnect_task = self._spawn(self._reconnect_after(delay_ms / 1000, handler))
        return delay_ms

    async def _reconnect_after(self, delay_seconds: float, handler: MessageHandler) -> None:
        await asyncio.sleep(delay_seconds)
        self._reconnect_task = None
        await self.connect(handler)

    def _cancel_pending_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # Socket ownership

    async def _teardown_socket(self) -> None:
        """Drop the current socket; its queued and future events are ignored."""
        self._generation += 1
        socket, self.socket = self.socket, None
        if socket is not None:
            await self._end_socket(socket)

    @staticmethod
    async def _end_socket(socket: WhatsAppSocket) -> None:
        try:
            await socket.end()
        except Exception:
            logger.debug("Error ending WhatsApp socket", exc_info=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _cancel_background(self) -> None:
        tasks = [task for task in self._background if task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
