"""WhatsApp connection manager.

This package provides:
- ConnectionSupervisor: socket lifecycle and reconnection state machine
- LivenessMonitor: periodic socket health check with forced reconnect
- MessageRelay: inbound message handling with provisional replies
- SessionStore: local and remote credential persistence

Example usage:
    from alquimia.channels.whatsapp import (
        ChatApiMessageHandler,
        ConnectionSupervisor,
        SessionStore,
        WhatsAppConfig,
    )

    config = WhatsAppConfig.from_settings(settings)
    supervisor = ConnectionSupervisor(config, SessionStore(config.auth_dir))
    await supervisor.connect(ChatApiMessageHandler.from_settings(settings))
"""

from alquimia.channels.whatsapp.config import WhatsAppConfig
from alquimia.channels.whatsapp.events import (
    CloseDisposition,
    CredentialsUpdated,
    DisconnectReason,
    MessageReceived,
    PairingCodeIssued,
    SessionEvent,
    SocketClosed,
    SocketOpened,
)
from alquimia.channels.whatsapp.exceptions import (
    ChatHandlerError,
    MessageSendTimeoutError,
    NotConnectedError,
    WhatsAppError,
)
from alquimia.channels.whatsapp.handlers import ChatApiMessageHandler
from alquimia.channels.whatsapp.models import (
    ConnectionStatus,
    OperationResult,
    SessionInfo,
)
from alquimia.channels.whatsapp.monitor import LivenessMonitor
from alquimia.channels.whatsapp.relay import MessageHandler, MessageRelay
from alquimia.channels.whatsapp.session_store import (
    SessionStore,
    SupabaseSessionTable,
)
from alquimia.channels.whatsapp.state import ConnectionPhase, ConnectionState
from alquimia.channels.whatsapp.supervisor import (
    CONNECTION_IN_PROGRESS,
    ConnectionSupervisor,
    compute_backoff,
)

__all__ = [
    "CONNECTION_IN_PROGRESS",
    "ChatApiMessageHandler",
    "ChatHandlerError",
    "CloseDisposition",
    "ConnectionPhase",
    "ConnectionState",
    "ConnectionStatus",
    "ConnectionSupervisor",
    "CredentialsUpdated",
    "DisconnectReason",
    "LivenessMonitor",
    "MessageHandler",
    "MessageReceived",
    "MessageRelay",
    "MessageSendTimeoutError",
    "NotConnectedError",
    "OperationResult",
    "PairingCodeIssued",
    "SessionEvent",
    "SessionInfo",
    "SessionStore",
    "SocketClosed",
    "SocketOpened",
    "SupabaseSessionTable",
    "WhatsAppConfig",
    "WhatsAppError",
    "compute_backoff",
]
