"""Session events emitted by the WhatsApp socket and consumed by the supervisor."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Iterable, Mapping, Optional, Union


class DisconnectReason(IntEnum):
    """Close status codes reported by the WhatsApp Web protocol library."""

    LOGGED_OUT = 401
    FORBIDDEN = 403
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


class CloseDisposition(str, Enum):
    RECONNECT = "reconnect"
    LOGGED_OUT = "logged_out"


@dataclass(frozen=True)
class PairingCodeIssued:
    """A new scannable pairing code is available."""

    code: str


@dataclass(frozen=True)
class SocketOpened:
    """The session is authenticated and the transport is open."""

    user_id: Optional[str] = None


@dataclass(frozen=True)
class SocketClosed:
    """The transport closed; ``status_code`` is None for a bare transport drop."""

    status_code: Optional[int] = None
    reason: str = ""


@dataclass(frozen=True)
class MessageReceived:
    sender: str
    text: str
    from_me: bool = False
    message_id: Optional[str] = None


@dataclass(frozen=True)
class CredentialsUpdated:
    """Refreshed credential bundle: credential filename -> JSON content."""

    files: Mapping[str, Any] = field(default_factory=dict)


SessionEvent = Union[
    PairingCodeIssued, SocketOpened, SocketClosed, MessageReceived, CredentialsUpdated
]


def classify_close(
    status_code: Optional[int], logged_out_codes: Iterable[int]
) -> CloseDisposition:
    """Decide whether a closed session may be reconnected automatically."""
    if status_code is not None and status_code in set(logged_out_codes):
        return CloseDisposition.LOGGED_OUT
    return CloseDisposition.RECONNECT


def describe_close(status_code: Optional[int]) -> str:
    if status_code is None:
        return "transport closed"
    try:
        return DisconnectReason(status_code).name.lower()
    except ValueError:
        return f"status {status_code}"


def phone_from_jid(jid: str) -> str:
    """"56912345678:12@s.whatsapp.net" -> "56912345678"."""
    return jid.split("@")[0].split(":")[0]


def extract_message_text(message: Optional[Mapping[str, Any]]) -> str:
    """Pull the plain text body out of a protocol message payload."""
    if not message:
        return ""
    text = message.get("conversation")
    if not text:
        extended = message.get("extendedTextMessage") or {}
        text = extended.get("text")
    return str(text or "")
