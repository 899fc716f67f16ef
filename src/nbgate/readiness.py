"""TCP readiness probe for the Jupyter server."""

from __future__ import annotations

import asyncio

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from nbgate.errors import ReadinessTimeout
from nbgate.logging import LogComponent, get_logger

logger = get_logger(LogComponent.READINESS)

# Upper bound on a single connection attempt, in seconds
_MAX_ATTEMPT_TIMEOUT = 1.0


async def _try_connect(host: str, port: int, timeout: float) -> None:
    _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


async def wait_until_ready(
    port: int,
    host: str,
    poll_interval_ms: int,
    timeout_ms: int,
) -> None:
    """Poll until ``host:port`` accepts TCP connections.

    Args:
        port: Port the server should listen on
        host: Host to connect to
        poll_interval_ms: Delay between connection attempts
        timeout_ms: Overall deadline

    Raises:
        ReadinessTimeout: If no connection succeeded before the deadline
    """
    interval = poll_interval_ms / 1000
    deadline = timeout_ms / 1000
    attempt_timeout = min(max(interval, 0.05), _MAX_ATTEMPT_TIMEOUT)

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_delay(deadline),
            wait=wait_fixed(interval),
            retry=retry_if_exception_type((OSError, asyncio.TimeoutError)),
        ):
            with attempt:
                await _try_connect(host, port, attempt_timeout)
    except RetryError as e:
        raise ReadinessTimeout(
            f"Timed out waiting for {host}:{port} to accept connections",
            details={"timeout_ms": timeout_ms},
        ) from e.last_attempt.exception()

    logger.debug(f"{host}:{port} is accepting connections")
