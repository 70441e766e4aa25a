"""
Pytest configuration and fixtures for the Alquimia dashboard API.

This module provides:
- Test settings with an isolated data directory
- A fast WhatsApp configuration and a supervisor wired to fake sockets
"""

import shutil
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fakes import FakeRemoteTable, FakeSocketFactory, fake_pairing_renderer

from alquimia.channels.whatsapp.config import WhatsAppConfig
from alquimia.channels.whatsapp.session_store import SessionStore
from alquimia.channels.whatsapp.supervisor import ConnectionSupervisor
from alquimia.core.config import Settings


@pytest.fixture(scope="session")
def test_data_dir() -> Generator[str, None, None]:
    """Create a temporary directory for test data.

    Yields:
        str: Path to the temporary test data directory
    """
    temp_dir = tempfile.mkdtemp(prefix="alquimia_test_")
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def test_settings(test_data_dir: str) -> Settings:
    """Settings configured for testing (debug mode, no remote storage)."""
    return Settings(
        DEBUG=True,
        DATA_DIR=test_data_dir,
        ENVIRONMENT="testing",
        SUPABASE_URL="",
        SUPABASE_SERVICE_KEY="",
        WHATSAPP_AUTO_CONNECT=False,
    )


@pytest.fixture
def whatsapp_config(tmp_path: Path) -> WhatsAppConfig:
    """Millisecond-scale timings so reconnect and retry paths run quickly."""
    return WhatsAppConfig(
        auth_dir=str(tmp_path / "whatsapp_auth"),
        max_reconnect_attempts=10,
        initial_retry_delay_ms=10,
        max_retry_delay_ms=40,
        connection_timeout_ms=1000,
        restart_cooldown_ms=0,
        keepalive_interval_ms=60000,
        liveness_failure_threshold=3,
        message_send_timeout_ms=200,
        send_retries=3,
        send_retry_delay_ms=1,
        handler_timeout_ms=1000,
        reconnect_wait_ticks=5,
        reconnect_wait_tick_ms=10,
        ack_message="⏳ Analizando...",
        failure_message="❌ Error procesando tu mensaje",
    )


@pytest.fixture
def remote_table() -> FakeRemoteTable:
    return FakeRemoteTable()


@pytest.fixture
def session_store(whatsapp_config: WhatsAppConfig) -> SessionStore:
    return SessionStore(whatsapp_config.auth_dir)


@pytest.fixture
def socket_factory() -> FakeSocketFactory:
    return FakeSocketFactory()


@pytest.fixture
def message_handler() -> AsyncMock:
    return AsyncMock(return_value="Ventas de ayer: $1.250.000")


@pytest_asyncio.fixture
async def supervisor(
    whatsapp_config: WhatsAppConfig,
    session_store: SessionStore,
    socket_factory: FakeSocketFactory,
):
    """Supervisor wired to the fake socket factory; shut down after the test."""
    supervisor = ConnectionSupervisor(
        whatsapp_config,
        session_store,
        socket_factory=socket_factory,
        pairing_renderer=fake_pairing_renderer,
    )
    yield supervisor
    await supervisor.shutdown()
