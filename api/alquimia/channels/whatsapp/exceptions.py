"""WhatsApp channel exceptions."""


class WhatsAppError(Exception):
    """Base class for WhatsApp channel errors."""

    pass


class NotConnectedError(WhatsAppError):
    """Raised when a send is attempted without an open socket."""

    pass


class MessageSendTimeoutError(WhatsAppError):
    """Raised when a send does not complete within the send timeout."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Message send timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class BridgeError(WhatsAppError):
    """Raised when the protocol bridge rejects an action."""

    pass


class ChatHandlerError(WhatsAppError):
    """Raised when the chat pipeline cannot produce an answer."""

    pass
