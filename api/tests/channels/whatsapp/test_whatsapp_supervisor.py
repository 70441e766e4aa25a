"""Unit tests for the WhatsApp ConnectionSupervisor state machine."""

import asyncio
import json
import time
from pathlib import Path

import pytest
from fakes import (
    TEST_USER_ID,
    FakeRemoteTable,
    FakeSocketFactory,
    fake_pairing_renderer,
    open_connection,
    paired_credentials,
    wait_until,
)

from alquimia.channels.whatsapp.config import WhatsAppConfig
from alquimia.channels.whatsapp.events import (
    CredentialsUpdated,
    PairingCodeIssued,
    SocketClosed,
    SocketOpened,
)
from alquimia.channels.whatsapp.session_store import SessionStore
from alquimia.channels.whatsapp.state import ConnectionPhase
from alquimia.channels.whatsapp.supervisor import (
    CONNECTION_IN_PROGRESS,
    ConnectionSupervisor,
    compute_backoff,
)


def _error_sources(supervisor: ConnectionSupervisor):
    return [record.source for record in supervisor.state.recent_errors]


class TestComputeBackoff:
    """Test the exponential reconnect delay."""

    @pytest.mark.parametrize(
        "attempt,expected",
        [
            (0, 2000),
            (1, 4000),
            (2, 8000),
            (3, 16000),
            (4, 32000),
            (5, 60000),
            (9, 60000),
        ],
    )
    def test_default_schedule(self, attempt, expected):
        assert compute_backoff(attempt, 2000, 60000) == expected

    def test_delay_never_exceeds_max(self):
        delays = [compute_backoff(n, 10, 40) for n in range(20)]
        assert max(delays) == 40
        assert delays == sorted(delays)


class TestConnect:
    """Test connection establishment."""

    @pytest.mark.asyncio
    async def test_connect_creates_socket(self, supervisor, socket_factory, message_handler):
        result = await supervisor.connect(message_handler)

        assert result.success is True
        assert socket_factory.calls == 1
        assert supervisor.socket is socket_factory.latest
        assert supervisor.state.phase == ConnectionPhase.CONNECTING
        assert supervisor.is_connecting is False
        assert supervisor.state.connected is False

    @pytest.mark.asyncio
    async def test_connect_passes_stored_credentials(
        self, supervisor, session_store, socket_factory, message_handler
    ):
        session_store.write_credentials(paired_credentials())

        await supervisor.connect(message_handler)

        assert socket_factory.credentials[0]["creds.json"]["me"]["id"] == TEST_USER_ID

    @pytest.mark.asyncio
    async def test_concurrent_connect_is_rejected(
        self, supervisor, socket_factory, message_handler
    ):
        """A second connect while one is in flight never creates a second socket."""
        socket_factory.gate = asyncio.Event()
        first = asyncio.create_task(supervisor.connect(message_handler))
        await wait_until(lambda: socket_factory.calls == 1)

        second = await supervisor.connect(message_handler)
        assert second.success is False
        assert second.message == CONNECTION_IN_PROGRESS

        socket_factory.gate.set()
        result = await first
        assert result.success is True
        assert socket_factory.calls == 1
        assert len(socket_factory.sockets) == 1

    @pytest.mark.asyncio
    async def test_connect_failure_schedules_reconnect(
        self, supervisor, socket_factory, message_handler
    ):
        socket_factory.failures = [ConnectionError("bridge unreachable")]

        result = await supervisor.connect(message_handler)

        assert result.success is False
        assert "bridge unreachable" in result.message
        assert supervisor.state.phase == ConnectionPhase.CLOSED
        assert supervisor.state.reconnect_attempts == 1
        assert supervisor.next_reconnect_delay_ms == 10
        assert "connect" in _error_sources(supervisor)

        await wait_until(lambda: len(socket_factory.sockets) == 1)
        assert socket_factory.calls == 2

    @pytest.mark.asyncio
    async def test_connect_timeout_is_a_failure(
        self, tmp_path, session_store, socket_factory, message_handler
    ):
        config = WhatsAppConfig(auth_dir=str(tmp_path), connection_timeout_ms=50)
        supervisor = ConnectionSupervisor(
            config, session_store, socket_factory=socket_factory,
            pairing_renderer=fake_pairing_renderer,
        )
        socket_factory.gate = asyncio.Event()
        try:
            result = await supervisor.connect(message_handler)

            assert result.success is False
            assert supervisor.socket is None
            assert supervisor.is_connecting is False
            assert "connect" in _error_sources(supervisor)
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_connect_restores_remote_session(
        self, whatsapp_config, remote_table, socket_factory, message_handler
    ):
        remote_table.rows["56912345678"] = {
            "phone_number": "56912345678",
            "session_data": paired_credentials(),
            "last_connected": "2026-10-01T12:00:00+00:00",
            "is_active": True,
        }
        store = SessionStore(whatsapp_config.auth_dir, remote=remote_table)
        supervisor = ConnectionSupervisor(
            whatsapp_config, store, socket_factory=socket_factory,
            pairing_renderer=fake_pairing_renderer,
        )
        try:
            await supervisor.connect(message_handler)

            assert store.has_stored_session() is True
            assert "creds.json" in socket_factory.credentials[0]
        finally:
            await supervisor.shutdown()


class TestSessionEvents:
    """Test the reaction to socket session events."""

    @pytest.mark.asyncio
    async def test_pairing_code_is_exposed_in_status(self, supervisor, message_handler):
        await supervisor.connect(message_handler)
        supervisor.state.reconnect_attempts = 4

        supervisor.socket.emit(PairingCodeIssued(code="2@pairing-ref"))
        await supervisor.wait_for_events()

        status = supervisor.get_status()
        assert status.has_pending_pairing_code is True
        assert status.pairing_code_image == "data:image/png;base64,2@pairing-ref"
        assert status.phase == ConnectionPhase.AWAITING_PAIRING
        assert status.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_open_resets_state(self, supervisor, message_handler):
        await supervisor.connect(message_handler)
        socket = supervisor.socket
        socket.emit(PairingCodeIssued(code="2@pairing-ref"))
        await supervisor.wait_for_events()
        supervisor.state.reconnect_attempts = 3

        socket.emit(SocketOpened(user_id=TEST_USER_ID))
        await supervisor.wait_for_events()

        state = supervisor.state
        assert state.connected is True
        assert state.phase == ConnectionPhase.OPEN
        assert state.pending_pairing_code is None
        assert state.reconnect_attempts == 0
        assert state.phone_identifier == "56912345678"
        assert state.last_connected is not None
        assert supervisor.monitor.is_running is True
        assert supervisor.is_open is True

    @pytest.mark.asyncio
    async def test_transient_close_schedules_backoff(
        self, supervisor, socket_factory, message_handler
    ):
        socket = await open_connection(supervisor, message_handler)

        socket.emit(SocketClosed(status_code=408))
        await supervisor.wait_for_events()

        assert supervisor.state.connected is False
        assert supervisor.state.phase == ConnectionPhase.CLOSED
        assert supervisor.state.reconnect_attempts == 1
        assert supervisor.next_reconnect_delay_ms == 10
        assert supervisor.monitor.is_running is False
        assert socket.ended is True

        await wait_until(lambda: len(socket_factory.sockets) == 2)

    @pytest.mark.asyncio
    async def test_repeated_failures_double_the_delay(
        self, supervisor, socket_factory, message_handler
    ):
        await supervisor.connect(message_handler)
        delays = []
        for _ in range(4):
            supervisor.socket.emit(SocketClosed(status_code=503))
            await supervisor.wait_for_events()
            delays.append(supervisor.next_reconnect_delay_ms)
            expected = len(delays) + 1
            await wait_until(
                lambda: len(socket_factory.sockets) == expected
                and supervisor.socket is socket_factory.latest
            )

        assert delays == [10, 20, 40, 40]

    @pytest.mark.parametrize("status_code", [401, 428])
    @pytest.mark.asyncio
    async def test_logged_out_close_never_reconnects(
        self, supervisor, socket_factory, message_handler, status_code
    ):
        socket = await open_connection(supervisor, message_handler)
        supervisor.state.reconnect_attempts = 2

        socket.emit(SocketClosed(status_code=status_code))
        await supervisor.wait_for_events()

        assert supervisor.state.phase == ConnectionPhase.LOGGED_OUT
        assert supervisor.state.reconnect_attempts == 0
        assert supervisor.reconnect_pending is False
        assert "session" in _error_sources(supervisor)

        await asyncio.sleep(supervisor.config.max_retry_delay_ms * 2 / 1000)
        assert len(socket_factory.sockets) == 1

    @pytest.mark.asyncio
    async def test_transport_drop_without_code_reconnects(
        self, supervisor, socket_factory, message_handler
    ):
        socket = await open_connection(supervisor, message_handler)

        socket.emit(SocketClosed(status_code=None, reason="bridge connection closed"))
        await supervisor.wait_for_events()

        assert supervisor.state.phase == ConnectionPhase.CLOSED
        await wait_until(lambda: len(socket_factory.sockets) == 2)

    @pytest.mark.asyncio
    async def test_attempt_cap_stops_and_resets_counter(
        self, tmp_path, session_store, message_handler
    ):
        config = WhatsAppConfig(
            auth_dir=str(tmp_path),
            max_reconnect_attempts=2,
            initial_retry_delay_ms=5,
            max_retry_delay_ms=10,
        )
        factory = FakeSocketFactory()
        factory.fail_always = ConnectionError("bridge down")
        supervisor = ConnectionSupervisor(
            config, session_store, socket_factory=factory,
            pairing_renderer=fake_pairing_renderer,
        )
        try:
            await supervisor.connect(message_handler)
            await wait_until(lambda: factory.calls == 3)
            await wait_until(lambda: not supervisor.reconnect_pending)
            await asyncio.sleep(0.05)

            assert factory.calls == 3
            assert supervisor.state.reconnect_attempts == 0
            messages = [r.message for r in supervisor.state.recent_errors]
            assert "Maximum reconnect attempts reached" in messages
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_events_from_replaced_socket_are_ignored(
        self, supervisor, socket_factory, message_handler
    ):
        old_socket = await open_connection(supervisor, message_handler)
        await supervisor.disconnect()

        old_socket.emit(SocketClosed(status_code=408))
        await supervisor.wait_for_events()

        assert supervisor.state.phase == ConnectionPhase.IDLE
        assert supervisor.reconnect_pending is False
        await asyncio.sleep(0.05)
        assert len(socket_factory.sockets) == 1

    @pytest.mark.asyncio
    async def test_credentials_update_is_persisted(
        self, supervisor, session_store, message_handler
    ):
        await supervisor.connect(message_handler)

        supervisor.socket.emit(CredentialsUpdated(files=paired_credentials()))
        await supervisor.wait_for_events()

        assert session_store.validate_session() is True
        creds = json.loads(Path(session_store.creds_file).read_text())
        assert creds["me"]["id"] == TEST_USER_ID

    @pytest.mark.asyncio
    async def test_open_saves_session_remotely(
        self, whatsapp_config, remote_table, socket_factory, message_handler
    ):
        store = SessionStore(whatsapp_config.auth_dir, remote=remote_table)
        store.write_credentials(paired_credentials())
        supervisor = ConnectionSupervisor(
            whatsapp_config, store, socket_factory=socket_factory,
            pairing_renderer=fake_pairing_renderer,
        )
        try:
            await open_connection(supervisor, message_handler)
            await wait_until(lambda: len(remote_table.upserts) == 1)

            row = remote_table.upserts[0]
            assert row["phone_number"] == "56912345678"
            assert row["is_active"] is True
            assert "creds.json" in row["session_data"]
        finally:
            await supervisor.shutdown()


class TestControlOperations:
    """Test disconnect, restart, clear_session and forced reconnect."""

    @pytest.mark.asyncio
    async def test_disconnect_keeps_credentials(
        self, supervisor, session_store, message_handler
    ):
        session_store.write_credentials(paired_credentials())
        socket = await open_connection(supervisor, message_handler)

        result = await supervisor.disconnect()

        assert result.success is True
        assert socket.ended is True
        assert supervisor.socket is None
        assert supervisor.state.connected is False
        assert supervisor.state.phase == ConnectionPhase.IDLE
        assert supervisor.monitor.is_running is False
        assert session_store.has_stored_session() is True

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_reconnect(
        self, supervisor, socket_factory, message_handler
    ):
        socket = await open_connection(supervisor, message_handler)
        socket.emit(SocketClosed(status_code=408))
        await supervisor.wait_for_events()
        assert supervisor.reconnect_pending is True

        await supervisor.disconnect()
        await asyncio.sleep(0.05)

        assert supervisor.reconnect_pending is False
        assert len(socket_factory.sockets) == 1

    @pytest.mark.asyncio
    async def test_restart_replaces_socket(
        self, supervisor, socket_factory, message_handler
    ):
        first = await open_connection(supervisor, message_handler)

        result = await supervisor.restart(message_handler)

        assert result.success is True
        assert first.ended is True
        assert len(socket_factory.sockets) == 2
        assert supervisor.socket is socket_factory.latest

    @pytest.mark.asyncio
    async def test_clear_session_removes_local_and_remote(
        self, whatsapp_config, remote_table, socket_factory, message_handler
    ):
        store = SessionStore(whatsapp_config.auth_dir, remote=remote_table)
        store.write_credentials(paired_credentials())
        supervisor = ConnectionSupervisor(
            whatsapp_config, store, socket_factory=socket_factory,
            pairing_renderer=fake_pairing_renderer,
        )
        try:
            await open_connection(supervisor, message_handler)
            supervisor.state.messages_received = 5

            result = await supervisor.clear_session()

            assert result.success is True
            assert store.has_stored_session() is False
            assert remote_table.deleted == ["56912345678"]
            assert supervisor.state.messages_received == 0
            assert supervisor.state.phone_identifier is None
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_clear_session_before_open_removes_remote_row(
        self, whatsapp_config, remote_table, socket_factory, message_handler
    ):
        remote_table.rows["56912345678"] = {
            "phone_number": "56912345678",
            "session_data": paired_credentials(),
            "last_connected": "2026-10-01T12:00:00+00:00",
            "is_active": True,
        }
        store = SessionStore(whatsapp_config.auth_dir, remote=remote_table)
        store.write_credentials(paired_credentials())
        supervisor = ConnectionSupervisor(
            whatsapp_config, store, socket_factory=socket_factory,
            pairing_renderer=fake_pairing_renderer,
        )
        try:
            assert supervisor.state.phone_identifier is None

            result = await supervisor.clear_session()
            await supervisor.connect(message_handler)

            assert result.success is True
            assert remote_table.deleted == ["56912345678"]
            assert remote_table.rows == {}
            assert store.has_stored_session() is False
            assert socket_factory.credentials == [{}]
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_clear_session_waits_for_inflight_remote_save(
        self, whatsapp_config, socket_factory, message_handler
    ):
        class SlowRemoteTable(FakeRemoteTable):
            def upsert(self, row):
                time.sleep(0.05)
                super().upsert(row)

        remote_table = SlowRemoteTable()
        store = SessionStore(whatsapp_config.auth_dir, remote=remote_table)
        store.write_credentials(paired_credentials())
        supervisor = ConnectionSupervisor(
            whatsapp_config, store, socket_factory=socket_factory,
            pairing_renderer=fake_pairing_renderer,
        )
        try:
            await open_connection(supervisor, message_handler)

            await supervisor.clear_session()
            await asyncio.sleep(0.1)

            assert len(remote_table.upserts) == 1
            assert remote_table.deleted == ["56912345678"]
            assert remote_table.rows == {}
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_connect_while_open_resets_connected_flag(
        self, supervisor, socket_factory, message_handler
    ):
        first = await open_connection(supervisor, message_handler)
        assert supervisor.monitor.is_running is True

        result = await supervisor.connect(message_handler)

        assert result.success is True
        assert first.ended is True
        assert supervisor.state.connected is False
        assert supervisor.get_status().connected is False
        assert supervisor.monitor.is_running is False
        assert supervisor.state.phase == ConnectionPhase.CONNECTING

    @pytest.mark.asyncio
    async def test_force_reconnect_replaces_socket(
        self, supervisor, socket_factory, message_handler
    ):
        first = await open_connection(supervisor, message_handler)

        result = await supervisor.force_reconnect()

        assert result is not None and result.success is True
        assert first.ended is True
        assert supervisor.socket is socket_factory.latest
        assert len(socket_factory.sockets) == 2

    @pytest.mark.asyncio
    async def test_force_reconnect_after_disconnect_is_noop(
        self, supervisor, socket_factory, message_handler
    ):
        await open_connection(supervisor, message_handler)
        await supervisor.disconnect()

        result = await supervisor.force_reconnect()

        assert result is None
        assert len(socket_factory.sockets) == 1


class TestPairingToLoggedOutScenario:
    """Fresh pairing, open, then a logged-out close from the server."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, supervisor, session_store, socket_factory, message_handler):
        assert session_store.has_stored_session() is False

        await supervisor.connect(message_handler)
        socket = supervisor.socket
        socket.emit(PairingCodeIssued(code="2@fresh-pairing"))
        await supervisor.wait_for_events()
        assert supervisor.get_status().has_pending_pairing_code is True

        socket.emit(CredentialsUpdated(files=paired_credentials()))
        socket.emit(SocketOpened(user_id=TEST_USER_ID))
        await supervisor.wait_for_events()

        status = supervisor.get_status()
        assert status.connected is True
        assert status.phone_identifier == "56912345678"
        assert status.has_pending_pairing_code is False
        assert session_store.has_stored_session() is True

        socket.emit(SocketClosed(status_code=428))
        await supervisor.wait_for_events()

        status = supervisor.get_status()
        assert status.connected is False
        assert status.phase == ConnectionPhase.LOGGED_OUT
        await asyncio.sleep(supervisor.config.max_retry_delay_ms * 2 / 1000)
        assert len(socket_factory.sockets) == 1
        assert supervisor.reconnect_pending is False
