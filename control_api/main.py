"""Control API application for the stream supervisor."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from control_api.routes import root_router, router
from control_api.websocket import ConnectionManager
from stream_supervisor import __version__
from stream_supervisor.errors import SupervisorError
from stream_supervisor.supervisor import StreamSupervisor

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


async def relay_events(queue: asyncio.Queue, manager: ConnectionManager) -> None:
    """Push every supervisor transition to connected WebSocket clients."""
    while True:
        event = await queue.get()
        await manager.broadcast(event.to_dict())


def setup_exception_handlers(app: FastAPI) -> None:
    """Map supervisor errors to HTTP responses.

    Args:
        app: FastAPI application instance.
    """

    @app.exception_handler(SupervisorError)
    async def supervisor_exception_handler(request: Request, exc: SupervisorError):
        """Handle supervisor errors with their own status codes."""
        if exc.status_code >= 500:
            logger.error(f"Supervisor error on {request.url.path}: {exc.message}")
        else:
            logger.warning(f"Rejected {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(supervisor: Optional[StreamSupervisor] = None) -> FastAPI:
    """Create the control API application.

    Args:
        supervisor: Supervisor to expose (built from env settings if not provided)

    Returns:
        FastAPI application
    """
    if supervisor is None:
        supervisor = StreamSupervisor()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown.

        Args:
            app: FastAPI application instance.
        """
        logger.info("Starting control API...")
        queue = supervisor.events.subscribe()
        relay = asyncio.create_task(relay_events(queue, app.state.connection_manager))
        try:
            yield
        finally:
            logger.info("Shutting down control API, stopping all streams...")
            relay.cancel()
            try:
                await relay
            except asyncio.CancelledError:
                pass
            supervisor.events.unsubscribe(queue)
            stopped = await supervisor.stop_all()
            logger.info(f"Stopped {stopped} streams")

    app = FastAPI(
        title="Stream Supervisor Control API",
        description="Start, stop and observe live audio streams",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.supervisor = supervisor
    app.state.connection_manager = ConnectionManager()

    setup_exception_handlers(app)

    app.include_router(router, prefix=API_PREFIX, tags=["Streams"])
    app.include_router(root_router, tags=["Monitoring"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint.

        Returns:
            dict: Health status.
        """
        return {
            "status": "healthy",
            "service": "stream-supervisor",
            "active_streams": len(supervisor.list_active()),
        }

    return app


if __name__ == "__main__":
    import uvicorn

    from logging_module import LoggingConfig, setup_logging

    setup_logging(LoggingConfig.from_env())
    uvicorn.run(
        create_app(),
        host=os.getenv("CONTROL_API_HOST", "127.0.0.1"),
        port=int(os.getenv("CONTROL_API_PORT", "8080")),
        log_level="info",
    )
