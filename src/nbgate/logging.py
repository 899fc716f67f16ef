"""Centralized logging for nbgate (buffering, component loggers and console echo)."""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import ClassVar, TypeAlias

from pydantic import BaseModel, ConfigDict
from rich.console import Console
from rich.text import Text
from typing_extensions import override

from nbgate.models import LogChannel, LogEntry

LogBuffer: TypeAlias = deque[LogEntry]

console = Console(legacy_windows=False)


class LogComponent(str, Enum):
    """Where a log originated (used for fine-grained filtering)."""

    SERVER = "server"
    SUPERVISOR = "supervisor"
    PROXY = "proxy"
    PROCESS_CONTROL = "process_control"
    READINESS = "readiness"
    JUPYTER = "jupyter"


_COMPONENT_DEFAULT_CHANNEL: dict[LogComponent, LogChannel] = {
    LogComponent.SERVER: LogChannel.GATEWAY,
    LogComponent.SUPERVISOR: LogChannel.GATEWAY,
    LogComponent.PROXY: LogChannel.GATEWAY,
    LogComponent.PROCESS_CONTROL: LogChannel.GATEWAY,
    LogComponent.READINESS: LogChannel.GATEWAY,
    LogComponent.JUPYTER: LogChannel.JUPYTER,
}


class _LogState(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    buffer: LogBuffer | None = None
    echo: bool = False
    configured: bool = False


_STATE = _LogState()


def _now_timestamp(created: float | None = None) -> str:
    t = time.localtime(created if created is not None else time.time())
    return time.strftime("%Y-%m-%d %H:%M:%S", t)


def _append_entry(
    *,
    channel: LogChannel,
    component: LogComponent,
    level: str,
    content: str,
    created: float | None = None,
) -> None:
    entry = LogEntry(
        timestamp=_now_timestamp(created),
        level=level,
        channel=channel,
        component=component.value,
        content=content,
    )
    if _STATE.buffer is not None:
        _STATE.buffer.append(entry)
    if _STATE.echo:
        print_log_entry(entry)


class _BufferedLogHandler(logging.Handler):
    buffer_component: LogComponent
    buffer_channel: LogChannel

    def __init__(self, *, channel: LogChannel, component: LogComponent):
        super().__init__()
        self.buffer_channel = channel
        self.buffer_component = component

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            _append_entry(
                channel=self.buffer_channel,
                component=self.buffer_component,
                level=record.levelname,
                content=self.format(record),
                created=record.created,
            )
        except Exception:
            self.handleError(record)


class _ManagementAccessLogFilter(logging.Filter):
    """Filter noisy access logs for gateway-internal endpoints."""

    _internal_paths: tuple[str, ...] = (
        "/__nbgate__/logs",
        "/__nbgate__/status",
    )

    @override
    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        return not any(p in msg for p in self._internal_paths)


def configure_logging(
    *, buffer: LogBuffer | None = None, echo: bool = False, level: int = logging.INFO
) -> None:
    """Configure all nbgate loggers to write into the shared in-memory buffer.

    With ``echo`` set, every entry is also printed to the console.
    """
    _STATE.buffer = buffer
    _STATE.echo = echo

    for component in LogComponent:
        channel = _COMPONENT_DEFAULT_CHANNEL.get(component, LogChannel.GATEWAY)
        logger = logging.getLogger(f"nbgate.{component.value}")
        logger.setLevel(level)
        logger.handlers.clear()
        handler = _BufferedLogHandler(channel=channel, component=component)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.propagate = False

    # uvicorn only serves the gateway itself, so its logs land on the gateway channel.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv = logging.getLogger(name)
        uv.setLevel(level)
        uv.handlers.clear()
        uv.filters.clear()
        if name == "uvicorn.access":
            uv.addFilter(_ManagementAccessLogFilter())
        h = _BufferedLogHandler(channel=LogChannel.GATEWAY, component=LogComponent.SERVER)
        h.setFormatter(logging.Formatter("%(message)s"))
        uv.addHandler(h)
        uv.propagate = False

    _STATE.configured = True


def get_logger(component: LogComponent) -> logging.Logger:
    """Get a logger for a component (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"nbgate.{component.value}")
    if not _STATE.configured:
        # Avoid "No handlers could be found" warnings in contexts that don't configure logging.
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
        logger.propagate = False
    return logger


def log_jupyter_output(message: str, is_error: bool) -> None:
    """Record a line of Jupyter server output."""
    logger = get_logger(LogComponent.JUPYTER)
    if is_error:
        logger.error(message)
    else:
        logger.info(message)


def print_log_entry(entry: LogEntry) -> None:
    """Print a single log entry with `[nbgate]`/`[jupyter]` prefixes."""
    prefix_style = "bright_blue" if entry.channel == LogChannel.GATEWAY else "yellow"
    content_style = "red" if entry.level in ("ERROR", "CRITICAL") else None

    ts = Text(entry.timestamp, style="dim")
    sep = Text(" | ")
    prefix = Text(f"[{entry.channel.value}]", style=prefix_style)
    content = Text(entry.content, style=content_style or "")
    console.print(ts + sep + prefix + sep + content)
