import os
import time

import psutil  # type: ignore[import-untyped]
from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint that reports system resources and WhatsApp channel status.

    The WhatsApp channel is reported as "disabled" when it was not started,
    "connected" while the socket is open and "disconnected" otherwise. A
    disconnected channel does not make the API unhealthy: the dashboard
    chat keeps working without it.
    """
    cpu_percent = psutil.cpu_percent()
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage("/")

    whatsapp_status = "disabled"
    supervisor = getattr(request.app.state, "whatsapp_supervisor", None)
    if supervisor is not None:
        whatsapp_status = "connected" if supervisor.state.connected else "disconnected"

    # BUILD_ID is injected via Docker build arg from git commit hash
    build_id = os.getenv("BUILD_ID", "unknown")

    return {
        "status": "healthy",
        "timestamp": int(time.time()),
        "build_id": build_id,
        "system": {
            "cpu_percent": cpu_percent,
            "memory_percent": memory.percent,
            "disk_percent": disk.percent,
        },
        "services": {"whatsapp": whatsapp_status},
    }


@router.get("/health/ready")
async def readiness_check(request: Request):
    """
    Readiness probe: ready once startup has finished.
    """
    if not getattr(request.app.state, "settings", None):
        return {"status": "initializing"}
    return {"status": "ready"}


@router.get("/health/live")
async def liveness_check():
    """
    Liveness probe that checks if the service is running.
    """
    return {"status": "alive"}
