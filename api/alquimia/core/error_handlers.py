"""
Exception handlers that turn application errors into the dashboard's JSON
error envelope.

WhatsApp control failures are logged with the requested operation and the
connection phase at the time of the failure, so a 409 or 502 from the
control endpoints can be matched against the supervisor's own log lines.
"""

import logging
from typing import Any, Dict

from fastapi import Request, status
from fastapi.responses import JSONResponse

from alquimia.core.exceptions import BaseAppException

logger = logging.getLogger(__name__)


def _error_body(code: str, message: str, status_code: int) -> Dict[str, Any]:
    return {"error": {"code": code, "message": message, "status_code": status_code}}


def whatsapp_log_context(request: Request, exc: Exception) -> Dict[str, Any]:
    """Operation and connection phase for errors raised by WhatsApp control routes."""
    operation = getattr(exc, "operation", None)
    if operation is None:
        return {}

    context: Dict[str, Any] = {"whatsapp_operation": operation}
    supervisor = getattr(request.app.state, "whatsapp_supervisor", None)
    if supervisor is not None:
        phase = supervisor.state.phase
        context["whatsapp_phase"] = getattr(phase, "value", str(phase))
    return context


async def base_exception_handler(
    request: Request, exc: BaseAppException
) -> JSONResponse:
    """Render an application exception; client errors log as warnings."""
    extra = {
        "error_code": exc.error_code,
        "status_code": exc.status_code,
        "path": request.url.path,
        "method": request.method,
        **whatsapp_log_context(request, exc),
    }
    message = f"{exc.error_code}: {exc.detail}"
    if "whatsapp_operation" in extra:
        message = (
            f"WhatsApp {extra['whatsapp_operation']} rejected "
            f"(phase={extra.get('whatsapp_phase', 'unknown')}): {message}"
        )

    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(level, message, extra=extra)

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.error_code, exc.detail, exc.status_code),
        headers=exc.headers,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler; the client never sees exception details."""
    logger.exception(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}",
        extra={"exception_type": type(exc).__name__},
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(
            "INTERNAL_SERVER_ERROR",
            "An unexpected error occurred",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        ),
    )
