"""Supervisor for the single Jupyter server behind the gateway.

Lifecycle:
- Nothing is launched until the first `start()` (lazy start).
- Concurrent `start()` calls share one launch; every caller sees its outcome.
- The state is reset when the process exits, so the next `start()` relaunches.
- `close()` terminates the process best-effort and forgets it.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Coroutine
from typing import Any

from starlette.requests import Request
from starlette.responses import Response
from starlette.websockets import WebSocket

from nbgate.coalescer import StartCallback, StartCoalescer
from nbgate.errors import GatewayError, KernelExitedError, SpawnFailure
from nbgate.gateway import ProxyGateway
from nbgate.logging import LogComponent, get_logger
from nbgate.models import AppSettings
from nbgate.process import spawn_kernel_process
from nbgate.readiness import wait_until_ready
from nbgate.state import ServerState

logger = get_logger(LogComponent.SUPERVISOR)

# Seconds the output pipes may stay open after the server exits
OUTPUT_DRAIN_TIMEOUT = 1.0


def describe_exit(returncode: int) -> str:
    """Describe an asyncio returncode (negative values are signals)."""
    if returncode >= 0:
        return f"exit code: {returncode}"
    try:
        return f"signal: {signal.Signals(-returncode).name}"
    except ValueError:
        return f"signal: {-returncode}"


class KernelSupervisor:
    """Owns the Jupyter process, its proxy binding and the start coalescing."""

    def __init__(
        self,
        settings: AppSettings | None = None,
        gateway: ProxyGateway | None = None,
    ) -> None:
        self._settings: AppSettings = settings or AppSettings()
        self._gateway: ProxyGateway = gateway or ProxyGateway(
            self._settings.allow_origin_overrides
        )
        self._state: ServerState | None = None
        self._coalescer: StartCoalescer = StartCoalescer()
        self._tasks: set[asyncio.Task[Any]] = set()

    def init(self, settings: AppSettings) -> None:
        """Replace the settings used for the next launch."""
        self._settings = settings
        self._gateway.allow_origin_overrides = list(settings.allow_origin_overrides)

    @property
    def settings(self) -> AppSettings:
        return self._settings

    @property
    def gateway(self) -> ProxyGateway:
        return self._gateway

    @property
    def state(self) -> ServerState | None:
        return self._state

    @property
    def starting(self) -> bool:
        return self._coalescer.in_progress

    def get_port(self, request: Request | None = None) -> int:
        """Return the port where Jupyter is serving traffic, or 0 if it is not running."""
        return self._state.port if self._state else 0

    def _spawn_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # === Start ===

    def start(self, callback: StartCallback) -> None:
        """Start the Jupyter server, calling ``callback`` with None or the error.

        Must be called from the event loop. The callback is never invoked
        synchronously.
        """
        loop = asyncio.get_running_loop()
        if self._state is not None:
            loop.call_soon(callback, None)
            return

        if not self._coalescer.register(callback):
            # A start is already ongoing; returning here avoids a second Jupyter process.
            return

        logger.info("Starting jupyter server.")
        self._spawn_task(self._launch())

    async def ensure_started(self) -> None:
        """Wait until the Jupyter server is running.

        Raises:
            GatewayError: If the shared start attempt failed
        """
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _done(error: BaseException | None) -> None:
            if future.done():
                return
            if error is None:
                future.set_result(None)
            else:
                future.set_exception(error)

        self.start(_done)
        await future

    async def _launch(self) -> None:
        port = self._settings.jupyter_port
        logger.info(f"Launching Jupyter server at {port}")
        try:
            server = await self._create_server(port)
        except asyncio.CancelledError:
            self._coalescer.invoke_all(SpawnFailure("Jupyter server start was cancelled"))
            raise
        except Exception as e:
            error = e
            if not isinstance(e, GatewayError):
                error = SpawnFailure(f"Error creating the Jupyter process: {e}")
                error.__cause__ = e
            logger.error(f"Failed to start Jupyter server: {error}")
            self._coalescer.invoke_all(error)
            return

        self._state = server
        logger.info("Jupyter server started.")
        self._coalescer.invoke_all(None)

    async def _create_server(self, port: int) -> ServerState:
        kernel = await spawn_kernel_process(port, self._settings)
        proxy = self._gateway.bind(*self._settings.proxy_target(kernel.host, port))
        server = ServerState(port=port, process=kernel, proxy=proxy)
        self._spawn_task(self._watch_exit(server))

        try:
            await self._wait_for_ready(server)
        except BaseException:
            # Do not leave a second, unreachable Jupyter behind.
            server.closing = True
            kernel.terminate()
            raise
        return server

    async def _wait_for_ready(self, server: ServerState) -> None:
        probe = asyncio.create_task(
            wait_until_ready(
                server.port,
                server.process.host,
                self._settings.ready_poll_interval_ms,
                self._settings.ready_timeout_ms,
            )
        )
        exited = asyncio.create_task(server.process.wait())
        try:
            done, _ = await asyncio.wait(
                {probe, exited}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (probe, exited):
                if not task.done():
                    task.cancel()

        if probe not in done or server.process.returncode is not None:
            raise KernelExitedError(
                "Jupyter process exited before accepting connections",
                details={"returncode": server.process.returncode},
            )
        probe.result()

    # === Exit ===

    async def _watch_exit(self, server: ServerState) -> None:
        returncode = await server.process.wait()
        self._on_process_exit(server, returncode)
        await server.process.drain_output(OUTPUT_DRAIN_TIMEOUT)

    def _on_process_exit(self, server: ServerState, returncode: int) -> None:
        reason = describe_exit(returncode)
        if server.closing:
            logger.info(f"Jupyter process {server.process.pid} exited ({reason})")
        else:
            logger.error(f"Jupyter process {server.process.pid} exited due to {reason}")

        # A process replaced by a newer start must not clear its successor.
        if self._state is server:
            self._state = None

    # === Close ===

    def close(self) -> None:
        """Terminate the Jupyter server and forget it. Never raises."""
        server = self._state
        if server is None:
            logger.debug("close() called with no Jupyter server running")
            return

        server.closing = True
        server.process.terminate()
        self._state = None

    async def aclose(self) -> None:
        """Close the server, wait for it to exit, and shut the gateway down."""
        server = self._state
        self.close()

        if server is not None:
            try:
                await asyncio.wait_for(
                    server.process.wait(), timeout=self._settings.stop_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Jupyter process {server.process.pid} did not exit within "
                    f"{self._settings.stop_timeout}s, killing it"
                )
            # Also takes down kernels that outlived the server.
            server.process.kill()
            await server.process.drain_output(OUTPUT_DRAIN_TIMEOUT)

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._gateway.shutdown()

    # === Proxying ===

    async def handle_request(self, request: Request) -> Response:
        """Proxy this HTTP request to Jupyter."""
        proxy = self._state.proxy if self._state else None
        return await self._gateway.forward_http(request, proxy)

    async def handle_socket(self, websocket: WebSocket) -> None:
        """Proxy this WebSocket connection to Jupyter."""
        proxy = self._state.proxy if self._state else None
        await self._gateway.forward_socket(websocket, proxy)
