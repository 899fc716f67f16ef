"""HTTP and WebSocket reverse proxy to the Jupyter server.

Every request is forwarded to the single Jupyter server bound through a
`KernelProxy`. Responses pass through `rewrite_cors_headers` so that only
configured origins receive credentialed CORS headers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING

import httpx
import websockets
from starlette.requests import Request
from starlette.responses import Response, StreamingResponse
from starlette.websockets import WebSocket, WebSocketDisconnect
from websockets.asyncio.client import ClientConnection, connect as ws_connect

from nbgate.constants import ALLOW_CREDENTIALS_HEADER, ALLOW_ORIGIN_HEADER
from nbgate.logging import LogComponent, get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(LogComponent.PROXY)

HeaderList = list[tuple[str, str]]

_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Negotiated by the websockets client itself
_WS_HANDSHAKE = frozenset(
    {
        "host",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "sec-websocket-accept",
    }
)


def rewrite_cors_headers(
    headers: Sequence[tuple[str, str]],
    origin: str | None,
    allow_list: Sequence[str],
) -> HeaderList:
    """Return response headers with CORS rewritten for the request origin.

    Allow-listed origins get a credentialed allow-origin for themselves. For any
    other origin, an allow-origin emitted by Jupyter (usually `*`, from
    configurations that accept server-side websocket connections) is dropped.
    """
    if origin and origin in allow_list:
        rewritten = [
            (k, v)
            for k, v in headers
            if k.lower() not in (ALLOW_ORIGIN_HEADER, ALLOW_CREDENTIALS_HEADER)
        ]
        rewritten.append((ALLOW_ORIGIN_HEADER, origin))
        rewritten.append((ALLOW_CREDENTIALS_HEADER, "true"))
        return rewritten
    return [(k, v) for k, v in headers if k.lower() != ALLOW_ORIGIN_HEADER]


class KernelProxy:
    """Proxy binding to one Jupyter server.

    Attributes:
        http_url: Base URL for HTTP requests (e.g., "http://localhost:9000")
        ws_url: Base URL for WebSocket connections (e.g., "ws://localhost:9000")
    """

    def __init__(self, host: str, port: int) -> None:
        self.host: str = host
        self.port: int = port
        self.http_url: str = f"http://{host}:{port}"
        self.ws_url: str = f"ws://{host}:{port}"

    def __repr__(self) -> str:
        return f"KernelProxy({self.http_url!r})"


class ProxyGateway:
    """Forwards HTTP and WebSocket traffic with graceful shutdown support.

    Attributes:
        allow_origin_overrides: Origins that get credentialed CORS headers
        accepting_connections: Flag to control whether new connections are accepted
    """

    def __init__(self, allow_origin_overrides: Sequence[str] = ()) -> None:
        self.allow_origin_overrides: list[str] = list(allow_origin_overrides)
        self.accepting_connections: bool = True

        # Track active WebSocket connections for graceful shutdown
        self._active_websockets: set[asyncio.Task[None]] = set()
        self._ws_lock: asyncio.Lock = asyncio.Lock()

        self._http_client: httpx.AsyncClient | None = None

    def bind(self, host: str, port: int) -> KernelProxy:
        """Create the proxy handle for a Jupyter server at host:port."""
        proxy = KernelProxy(host, port)
        logger.info(f"Proxying to {proxy.http_url}")
        return proxy

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            # Kernel requests can be long-polling, so only connecting is bounded.
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(None, connect=10.0),
                follow_redirects=False,
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
        return self._http_client

    def on_proxy_error(self, error: BaseException, request: Request) -> Response:
        """Answer a request whose forwarding failed."""
        logger.error(f"Jupyter server returned error for {request.url.path}: {error!r}")
        return Response(status_code=500)

    async def forward_http(
        self, request: Request, proxy: KernelProxy | None
    ) -> Response:
        """Proxy an HTTP request to the Jupyter server.

        Args:
            request: The incoming Starlette request
            proxy: The binding of the running server, or None when no server is running

        Returns:
            Response from the Jupyter server, streamed through
        """
        if proxy is None:
            # should never be here.
            logger.error("Jupyter server was not created yet.")
            return Response(status_code=500)

        if not self.accepting_connections:
            return Response(
                content="Server is shutting down",
                status_code=503,
                media_type="text/plain",
            )

        target_url = f"{proxy.http_url}{request.url.path}"
        if request.url.query:
            target_url = f"{target_url}?{request.url.query}"

        headers = [
            (k, v)
            for k, v in request.headers.items()
            if k.lower() not in _HOP_BY_HOP and k.lower() != "host"
        ]

        has_body = (
            "content-length" in request.headers or "transfer-encoding" in request.headers
        )

        try:
            client = await self._get_http_client()
            upstream_request = client.build_request(
                method=request.method,
                url=target_url,
                headers=headers,
                content=request.stream() if has_body else None,
            )
            upstream = await client.send(upstream_request, stream=True)
        except Exception as e:
            return self.on_proxy_error(e, request)

        response_headers = rewrite_cors_headers(
            [
                (k, v)
                for k, v in upstream.headers.multi_items()
                if k.lower() not in _HOP_BY_HOP
            ],
            request.headers.get("origin"),
            self.allow_origin_overrides,
        )

        async def stream_response() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_raw():
                    yield chunk
            except httpx.HTTPError as e:
                logger.warning(f"Upstream stream for {request.url.path} broke: {e!r}")
            finally:
                await upstream.aclose()

        response = StreamingResponse(
            content=stream_response(),
            status_code=upstream.status_code,
        )
        # Raw headers keep repeated entries such as set-cookie.
        response.raw_headers = [
            (k.lower().encode("latin-1"), v.encode("latin-1"))
            for k, v in response_headers
        ]
        return response

    async def forward_socket(
        self, websocket: WebSocket, proxy: KernelProxy | None
    ) -> None:
        """Proxy a WebSocket connection to the Jupyter server.

        Args:
            websocket: The incoming Starlette WebSocket connection
            proxy: The binding of the running server, or None when no server is running
        """
        if proxy is None:
            # should never be here.
            logger.error("Jupyter server was not created yet.")
            await websocket.close()
            return

        if not self.accepting_connections:
            await websocket.close(code=1001, reason="Server is shutting down")
            return

        target_url = f"{proxy.ws_url}{websocket.url.path}"
        if websocket.url.query:
            target_url = f"{target_url}?{websocket.url.query}"

        headers = [
            (k, v)
            for k, v in websocket.headers.items()
            if k.lower() not in _HOP_BY_HOP and k.lower() not in _WS_HANDSHAKE
        ]
        subprotocols = websocket.scope.get("subprotocols") or None

        target_ws: ClientConnection | None = None
        try:
            target_ws = await ws_connect(
                target_url,
                additional_headers=headers,
                subprotocols=subprotocols,
                max_size=None,
            )
        except Exception as e:
            logger.warning(f"WebSocket proxy error for {websocket.url.path}: {e!r}")
            await websocket.close()
            return

        active_target_ws = target_ws
        current_task = asyncio.current_task()
        pumps: list[asyncio.Task[None]] = []
        try:
            await websocket.accept(subprotocol=active_target_ws.subprotocol)

            async def forward_to_target() -> None:
                """Forward messages from client to target."""
                try:
                    while True:
                        data = await websocket.receive()
                        if data["type"] == "websocket.disconnect":
                            break
                        if data.get("text") is not None:
                            await active_target_ws.send(data["text"])
                        elif data.get("bytes") is not None:
                            await active_target_ws.send(data["bytes"])
                except (WebSocketDisconnect, websockets.exceptions.ConnectionClosed):
                    pass

            async def forward_to_client() -> None:
                """Forward messages from target to client."""
                try:
                    async for message in active_target_ws:
                        if isinstance(message, str):
                            await websocket.send_text(message)
                        else:
                            await websocket.send_bytes(message)
                except (WebSocketDisconnect, websockets.exceptions.ConnectionClosed):
                    pass

            if current_task:
                async with self._ws_lock:
                    self._active_websockets.add(current_task)

            pumps.append(asyncio.create_task(forward_to_target()))
            pumps.append(asyncio.create_task(forward_to_client()))

            # Wait for either direction to complete
            await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)

        except Exception as e:
            logger.warning(f"WebSocket proxy error for {websocket.url.path}: {e!r}")
        finally:
            for task in pumps:
                if not task.done():
                    task.cancel()
            if pumps:
                await asyncio.gather(*pumps, return_exceptions=True)

            if current_task:
                async with self._ws_lock:
                    self._active_websockets.discard(current_task)

            try:
                await active_target_ws.close()
            except Exception as e:
                logger.debug(f"Closing upstream websocket failed: {e!r}")

            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Closing client websocket failed: {e!r}")

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Gracefully shutdown the gateway.

        1. Stop accepting new connections
        2. Close all active WebSocket connections
        3. Close the HTTP client

        Args:
            timeout: Maximum time to wait for connections to close
        """
        logger.info("Shutting down proxy...")
        self.accepting_connections = False

        async with self._ws_lock:
            tasks = list(self._active_websockets)

        if tasks:
            logger.info(f"Closing {len(tasks)} active WebSocket connection(s)...")
            for task in tasks:
                task.cancel()

            try:
                await asyncio.wait_for(
                    asyncio.gather(*tasks, return_exceptions=True),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for WebSocket connections to close")

        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

        logger.info("Proxy shutdown complete")

    @property
    def active_websocket_count(self) -> int:
        """Return the number of active WebSocket connections."""
        return len(self._active_websockets)
