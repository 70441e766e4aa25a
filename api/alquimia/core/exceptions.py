"""
Custom exception hierarchy for the Alquimia dashboard API.

HTTP-facing errors raised by route handlers. Channel-level errors live in
``alquimia.channels.whatsapp.exceptions`` and never reach the client directly.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class BaseAppException(HTTPException):
    """Base exception for all application errors."""

    def __init__(
        self,
        detail: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        headers: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code or self.__class__.__name__


class ServiceUnavailableError(BaseAppException):
    """Raised when a backing service has not been initialized."""

    def __init__(self, service: str):
        super().__init__(
            f"{service} is not available",
            status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="SERVICE_UNAVAILABLE",
        )


# WhatsApp control exceptions


class ConnectionInProgressError(BaseAppException):
    """Raised when a connect request arrives while another one is in flight."""

    def __init__(self, operation: str = "connect"):
        super().__init__(
            "WhatsApp connection already in progress",
            status.HTTP_409_CONFLICT,
            error_code="CONNECTION_IN_PROGRESS",
        )
        self.operation = operation


class ChannelOperationError(BaseAppException):
    """Raised when a WhatsApp control operation fails."""

    def __init__(self, operation: str, detail: str):
        # Map to controlled vocabulary to prevent high cardinality
        operation_map = {
            "connect": "CONNECT",
            "disconnect": "DISCONNECT",
            "restart": "RESTART",
            "clear_session": "CLEAR_SESSION",
        }
        normalized_op = operation_map.get(operation.lower(), "UNKNOWN")
        super().__init__(
            f"WhatsApp {operation} failed: {detail}",
            status.HTTP_502_BAD_GATEWAY,
            error_code=f"WHATSAPP_{normalized_op}_ERROR",
        )
        self.operation = operation
