"""
FastAPI application for the Alquimia dashboard API.
This module sets up the API server with the WhatsApp channel, routes and error handling.
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from prometheus_fastapi_instrumentator import Instrumentator

from alquimia.channels.whatsapp.config import WhatsAppConfig
from alquimia.channels.whatsapp.handlers import ChatApiMessageHandler
from alquimia.channels.whatsapp.session_store import SessionStore, SupabaseSessionTable
from alquimia.channels.whatsapp.supervisor import ConnectionSupervisor
from alquimia.core.config import Settings, get_settings
from alquimia.core.error_handlers import base_exception_handler, unhandled_exception_handler
from alquimia.core.exceptions import BaseAppException
from alquimia.routes import health, whatsapp

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger("alquimia.main")


def build_session_store(settings: Settings) -> SessionStore:
    remote = None
    if settings.SUPABASE_ENABLED:
        try:
            remote = SupabaseSessionTable.from_settings(settings)
            logger.info("Remote WhatsApp session storage enabled (Supabase)")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase session storage: {e}")
    else:
        logger.info("Supabase not configured; WhatsApp sessions are stored locally only")
    return SessionStore(settings.WHATSAPP_AUTH_DIR, remote=remote)


async def auto_connect(supervisor: ConnectionSupervisor, handler: ChatApiMessageHandler) -> None:
    """Resume a previously paired session after a restart."""
    store = supervisor.session_store
    if not store.has_stored_session() and store.remote_enabled:
        await store.load_session_from_remote()

    if not store.has_stored_session():
        logger.info("No stored WhatsApp session; waiting for a manual connect")
        return

    logger.info("Stored WhatsApp session found, reconnecting...")
    result = await supervisor.connect(handler)
    if not result.success:
        logger.warning(f"WhatsApp auto-connect failed: {result.message}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Application startup...")

    settings = get_settings()
    app.state.settings = settings

    # Create data directories (avoid import-time I/O)
    logger.info("Creating data directories...")
    settings.ensure_data_dirs()

    app.state.whatsapp_supervisor = None
    app.state.whatsapp_handler = None
    auto_connect_task = None

    if settings.WHATSAPP_ENABLED:
        logger.info("Initializing WhatsApp channel...")
        config = WhatsAppConfig.from_settings(settings)
        supervisor = ConnectionSupervisor(config, build_session_store(settings))
        handler = ChatApiMessageHandler.from_settings(settings)
        app.state.whatsapp_supervisor = supervisor
        app.state.whatsapp_handler = handler

        if settings.WHATSAPP_AUTO_CONNECT:
            auto_connect_task = asyncio.create_task(auto_connect(supervisor, handler))
    else:
        logger.info("WhatsApp channel disabled")

    yield

    # Shutdown
    logger.info("Application shutdown...")

    if auto_connect_task is not None and not auto_connect_task.done():
        auto_connect_task.cancel()

    if app.state.whatsapp_supervisor is not None:
        logger.info("Stopping WhatsApp channel...")
        await app.state.whatsapp_supervisor.shutdown()

    if app.state.whatsapp_handler is not None:
        await app.state.whatsapp_handler.aclose()


# Create FastAPI application
app = FastAPI(
    title=get_settings().PROJECT_NAME,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Instrument request metrics; /metrics is served below from the default registry
Instrumentator(should_respect_env_var=False, excluded_handlers=["/metrics"]).instrument(app)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint (HTTP and WhatsApp channel metrics)."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(whatsapp.router)

# Register exception handlers
# Register specific application exceptions first
app.add_exception_handler(BaseAppException, base_exception_handler)  # type: ignore[arg-type]
# Then register generic exception handler as fallback
app.add_exception_handler(Exception, unhandled_exception_handler)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    # Bind to 0.0.0.0 only in DEBUG mode (container/development)
    host = "0.0.0.0" if settings.DEBUG else "127.0.0.1"

    uvicorn.run(
        "alquimia.main:app",
        host=host,
        port=8000,
        reload=settings.DEBUG,
    )
