"""Process-wide WhatsApp connection state."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, Optional

RECENT_ERRORS_CAPACITY = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionPhase(str, Enum):
    """Supervisor state machine phases."""

    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    OPEN = "open"
    CLOSED = "closed"
    LOGGED_OUT = "logged_out"


@dataclass(frozen=True)
class ErrorRecord:
    source: str  # connect, handler, send, ack, liveness, session
    message: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ConnectionState:
    """Mutable connection snapshot.

    Only the supervisor, the liveness monitor and the message relay write to
    this object; everything else reads it through ``get_status()``.
    """

    phase: ConnectionPhase = ConnectionPhase.IDLE
    connected: bool = False
    connecting: bool = False
    last_connected: Optional[datetime] = None
    last_disconnected: Optional[datetime] = None
    reconnect_attempts: int = 0
    phone_identifier: Optional[str] = None
    pending_pairing_code: Optional[str] = None
    last_activity: Optional[datetime] = None
    messages_sent: int = 0
    messages_received: int = 0
    recent_errors: Deque[ErrorRecord] = field(
        default_factory=lambda: deque(maxlen=RECENT_ERRORS_CAPACITY)
    )

    def touch(self) -> None:
        self.last_activity = utcnow()

    def record_error(self, source: str, error: BaseException | str) -> ErrorRecord:
        """Append an error to the ring buffer, evicting the oldest when full."""
        message = error if isinstance(error, str) else (str(error) or type(error).__name__)
        record = ErrorRecord(source=source, message=message)
        self.recent_errors.append(record)
        return record

    def uptime_ms(self, now: Optional[datetime] = None) -> int:
        if not self.connected or self.last_connected is None:
            return 0
        now = now or utcnow()
        return max(0, int((now - self.last_connected).total_seconds() * 1000))
