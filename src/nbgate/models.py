"""Centralized Pydantic models and enums for nbgate."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field

from nbgate.constants import (
    DEFAULT_JUPYTER_EXECUTABLE,
    DEFAULT_JUPYTER_PORT,
    DEFAULT_READY_POLL_INTERVAL_MS,
    DEFAULT_READY_TIMEOUT_MS,
    DEFAULT_STOP_TIMEOUT,
)


# === Settings ===


class AppSettings(BaseModel):
    """Application settings consumed by the kernel supervisor.

    Read-only once constructed; the caller owns the instance.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    jupyter_port: int = Field(
        default=DEFAULT_JUPYTER_PORT,
        description="Port the Jupyter server is launched on.",
    )
    jupyter_executable: str = DEFAULT_JUPYTER_EXECUTABLE
    jupyter_args: list[str] = Field(
        default_factory=list,
        description="Extra arguments passed to the Jupyter server.",
    )
    datalab_root: str = Field(
        default="",
        description="Filesystem root served by the Jupyter contents manager.",
    )
    content_dir: str = Field(
        default="",
        description="Working directory for kernels started by Jupyter.",
    )
    kernel_manager_proxy_host: str | None = None
    kernel_manager_proxy_port: int | None = None
    allow_origin_overrides: list[str] = Field(default_factory=list)
    ready_poll_interval_ms: int = DEFAULT_READY_POLL_INTERVAL_MS
    ready_timeout_ms: int = DEFAULT_READY_TIMEOUT_MS
    stop_timeout: float = DEFAULT_STOP_TIMEOUT

    def proxy_target(self, host: str, port: int) -> tuple[str, int]:
        """Return the (host, port) proxied requests go to.

        The kernel manager proxy overrides win over the spawn address, e.g. when
        an intermediary sits between the gateway and Jupyter.
        """
        return (
            self.kernel_manager_proxy_host or host,
            self.kernel_manager_proxy_port or port,
        )


# === Log Models ===


class LogChannel(str, Enum):
    """Logical log channel."""

    GATEWAY = "nbgate"
    JUPYTER = "jupyter"


class LogEntry(BaseModel):
    """Strongly typed log entry model for buffered logs."""

    timestamp: str
    level: str
    channel: LogChannel
    component: str
    content: str


# === API Response Models ===


class StatusResponse(BaseModel):
    """Response model for the status endpoint."""

    running: bool = False
    port: int = 0
    pid: int | None = None
