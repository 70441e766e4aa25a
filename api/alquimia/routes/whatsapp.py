"""WhatsApp status and control endpoints for the dashboard."""

import logging

from fastapi import APIRouter, Depends, Request

from alquimia.channels.whatsapp.models import (
    ConnectionStatus,
    OperationResult,
    SessionInfo,
)
from alquimia.channels.whatsapp.relay import MessageHandler
from alquimia.channels.whatsapp.supervisor import (
    CONNECTION_IN_PROGRESS,
    ConnectionSupervisor,
)
from alquimia.core.exceptions import (
    ChannelOperationError,
    ConnectionInProgressError,
    ServiceUnavailableError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/whatsapp", tags=["WhatsApp"])


def get_supervisor(request: Request) -> ConnectionSupervisor:
    supervisor = getattr(request.app.state, "whatsapp_supervisor", None)
    if supervisor is None:
        raise ServiceUnavailableError("WhatsApp channel")
    return supervisor


def get_message_handler(request: Request) -> MessageHandler:
    handler = getattr(request.app.state, "whatsapp_handler", None)
    if handler is None:
        raise ServiceUnavailableError("WhatsApp message handler")
    return handler


@router.get("/status", response_model=ConnectionStatus)
async def get_status(
    supervisor: ConnectionSupervisor = Depends(get_supervisor),
) -> ConnectionStatus:
    """Connection snapshot, polled by the dashboard (includes the pairing code image)."""
    return supervisor.get_status()


@router.get("/session", response_model=SessionInfo)
async def get_session(
    supervisor: ConnectionSupervisor = Depends(get_supervisor),
) -> SessionInfo:
    store = supervisor.session_store
    return SessionInfo(
        has_stored_session=store.has_stored_session(),
        valid=store.validate_session(),
    )


@router.post("/connect", response_model=OperationResult)
async def connect(
    supervisor: ConnectionSupervisor = Depends(get_supervisor),
    handler: MessageHandler = Depends(get_message_handler),
) -> OperationResult:
    if supervisor.is_connecting:
        raise ConnectionInProgressError()

    result = await supervisor.connect(handler)
    if result.message == CONNECTION_IN_PROGRESS:
        raise ConnectionInProgressError()
    if not result.success:
        raise ChannelOperationError("connect", result.message)
    return result


@router.post("/disconnect", response_model=OperationResult)
async def disconnect(
    supervisor: ConnectionSupervisor = Depends(get_supervisor),
) -> OperationResult:
    return await supervisor.disconnect()


@router.post("/restart", response_model=OperationResult)
async def restart(
    supervisor: ConnectionSupervisor = Depends(get_supervisor),
    handler: MessageHandler = Depends(get_message_handler),
) -> OperationResult:
    logger.info("WhatsApp restart requested")
    result = await supervisor.restart(handler)
    if result.message == CONNECTION_IN_PROGRESS:
        raise ConnectionInProgressError("restart")
    if not result.success:
        raise ChannelOperationError("restart", result.message)
    return result


@router.post("/clear-session", response_model=OperationResult)
async def clear_session(
    supervisor: ConnectionSupervisor = Depends(get_supervisor),
) -> OperationResult:
    logger.info("WhatsApp session clear requested")
    result = await supervisor.clear_session()
    if not result.success:
        raise ChannelOperationError("clear_session", result.message)
    return result
