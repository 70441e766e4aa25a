"""API-facing models for the WhatsApp status and control interface."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from alquimia.channels.whatsapp.state import (
    ConnectionPhase,
    ConnectionState,
    ErrorRecord,
    utcnow,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorEntry(_CamelModel):
    source: str
    message: str
    timestamp: datetime

    @classmethod
    def from_record(cls, record: ErrorRecord) -> "ErrorEntry":
        return cls(source=record.source, message=record.message, timestamp=record.timestamp)


class ConnectionStatus(_CamelModel):
    """Status snapshot polled by the dashboard frontend."""

    connected: bool
    connecting: bool = False
    phase: ConnectionPhase = ConnectionPhase.IDLE
    has_pending_pairing_code: bool = False
    pairing_code_image: Optional[str] = None
    reconnect_attempts: int = 0
    phone_identifier: Optional[str] = None
    last_connected: Optional[datetime] = None
    last_disconnected: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    uptime_ms: int = 0
    messages_sent: int = 0
    messages_received: int = 0
    recent_errors: List[ErrorEntry] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_state(cls, state: ConnectionState) -> "ConnectionStatus":
        now = utcnow()
        return cls(
            connected=state.connected,
            connecting=state.connecting,
            phase=state.phase,
            has_pending_pairing_code=state.pending_pairing_code is not None,
            pairing_code_image=state.pending_pairing_code,
            reconnect_attempts=state.reconnect_attempts,
            phone_identifier=state.phone_identifier,
            last_connected=state.last_connected,
            last_disconnected=state.last_disconnected,
            last_activity=state.last_activity,
            uptime_ms=state.uptime_ms(now),
            messages_sent=state.messages_sent,
            messages_received=state.messages_received,
            recent_errors=[ErrorEntry.from_record(r) for r in state.recent_errors],
            timestamp=now,
        )


class OperationResult(_CamelModel):
    """Outcome of a control operation (connect, disconnect, restart, clear)."""

    success: bool
    message: str = ""


class SessionInfo(_CamelModel):
    has_stored_session: bool
    valid: bool
