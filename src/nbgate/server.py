"""FastAPI gateway app that fronts the Jupyter server.

Architecture:
- Management endpoints live under `/__nbgate__/`
- Every other HTTP request and WebSocket is proxied to Jupyter
- The Jupyter server is launched on the first proxied request
- Shutdown closes Jupyter and the proxy from the app lifespan
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import Response

from nbgate import __version__
from nbgate.constants import NBGATE_MANAGEMENT_PREFIX
from nbgate.errors import GatewayError
from nbgate.logging import LogBuffer, LogComponent, get_logger
from nbgate.models import AppSettings, LogEntry, StatusResponse
from nbgate.supervisor import KernelSupervisor

logger = get_logger(LogComponent.SERVER)

PROXIED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_app(
    settings: AppSettings,
    log_buffer: LogBuffer | None = None,
    supervisor: KernelSupervisor | None = None,
) -> FastAPI:
    """Create the gateway FastAPI app.

    Args:
        settings: Application settings
        log_buffer: Buffer served by the logs endpoint
        supervisor: Supervisor to use instead of creating one from ``settings``

    Returns:
        FastAPI app instance
    """
    kernel_supervisor = supervisor or KernelSupervisor(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
        try:
            yield
        finally:
            await kernel_supervisor.aclose()

    # Jupyter serves its own pages at every path, so FastAPI's docs are disabled.
    app = FastAPI(
        title="nbgate",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.supervisor = kernel_supervisor

    @app.get(f"{NBGATE_MANAGEMENT_PREFIX}/status", response_model=StatusResponse)
    async def get_status() -> StatusResponse:
        """Report whether Jupyter is running and where."""
        server = kernel_supervisor.state
        return StatusResponse(
            running=server is not None,
            port=kernel_supervisor.get_port(),
            pid=server.process.pid if server else None,
        )

    @app.get(f"{NBGATE_MANAGEMENT_PREFIX}/logs", response_model=list[LogEntry])
    async def get_logs() -> list[LogEntry]:
        """Return buffered log entries."""
        return list(log_buffer) if log_buffer is not None else []

    @app.api_route(
        "/{path:path}", methods=PROXIED_METHODS, include_in_schema=False
    )
    async def proxy_http(request: Request, path: str) -> Response:
        try:
            await kernel_supervisor.ensure_started()
        except GatewayError as e:
            return Response(
                content=f"Failed to start Jupyter server: {e}",
                status_code=500,
                media_type="text/plain",
            )
        return await kernel_supervisor.handle_request(request)

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str) -> None:
        try:
            await kernel_supervisor.ensure_started()
        except GatewayError as e:
            logger.error(f"Dropping websocket {websocket.url.path}: {e}")
            await websocket.close(code=1011)
            return
        await kernel_supervisor.handle_socket(websocket)

    return app


def run_server(
    settings: AppSettings,
    host: str,
    port: int,
    log_buffer: LogBuffer | None = None,
) -> None:
    """Run the gateway until interrupted.

    Args:
        settings: Application settings
        host: Interface to listen on
        port: Port to listen on
        log_buffer: Buffer served by the logs endpoint
    """
    app = create_app(settings, log_buffer=log_buffer)

    # log_config=None keeps the handlers installed by configure_logging().
    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
    )

    server = uvicorn.Server(config)
    logger.info(f"nbgate listening on http://{host}:{port}")
    asyncio.run(server.serve())
