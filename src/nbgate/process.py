"""Launching the Jupyter server process and capturing its output."""

from __future__ import annotations

import asyncio
import os
import re

from nbgate.constants import (
    DEFAULT_JUPYTER_HOST,
    JUPYTER_SUBCOMMAND,
    POLLING_KERNEL_MARKER,
)
from nbgate.errors import SpawnFailure
from nbgate.logging import LogComponent, get_logger, log_jupyter_output
from nbgate.models import AppSettings
from nbgate.process_control import (
    TrackedProcess,
    kill_process_tree,
    signal_tracked_process,
    track_children,
    track_process,
)

logger = get_logger(LogComponent.SUPERVISOR)

# Extracts '1.2.3.4' from '--ip="1.2.3.4"'
_IP_FLAG = re.compile(r'--ip="([^"]+)"')

# Jupyter can print very long lines (tracebacks, JSON payloads)
_STREAM_LIMIT = 1024 * 1024

# How often the exit watcher checks for the process exit code
_EXIT_POLL_INTERVAL = 0.05


def build_launch_args(settings: AppSettings, port: int) -> list[str]:
    """Build the argument list for ``jupyter``.

    The subcommand is prepended unless the configured arguments already start
    with it.
    """
    args = list(settings.jupyter_args)
    if not args or args[0] != JUPYTER_SUBCOMMAND:
        args = [JUPYTER_SUBCOMMAND, *args]

    # Jupyter also uses the contents root as the default kernel directory, so
    # both roots are passed explicitly.
    return args + [
        f"--port={port}",
        f'--FileContentsManager.root_dir="{settings.datalab_root}/"',
        f'--MappingKernelManager.root_dir="{settings.content_dir}"',
    ]


def resolve_server_address(args: list[str]) -> str:
    """Return the address Jupyter binds to, from an explicit ``--ip="..."`` flag."""
    for flag in args:
        match = _IP_FLAG.search(flag)
        if match:
            return match.group(1)
    return DEFAULT_JUPYTER_HOST


async def pipe_output(stream: asyncio.StreamReader, port: int, is_error: bool) -> None:
    """Forward each line of ``stream`` to the Jupyter output log."""
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            # Line longer than the stream limit; the reader already skipped it.
            continue
        if not line:
            break
        text = line.decode("utf-8", errors="replace").rstrip()
        if not text or POLLING_KERNEL_MARKER in text:
            continue
        log_jupyter_output(f"[{port}]: {text}", is_error)


class KernelProcess:
    """Handle to a running Jupyter server process."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        port: int,
        host: str,
        args: list[str],
    ) -> None:
        self.process: asyncio.subprocess.Process = process
        self.port: int = port
        self.host: str = host
        self.args: list[str] = args
        self.tracked: TrackedProcess | None = track_process(process.pid)
        self._pipes: list[asyncio.Task[None]] = []
        self._children: list[TrackedProcess] = []

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def start_output_pipes(self) -> None:
        if self.process.stdout is not None:
            self._pipes.append(
                asyncio.create_task(pipe_output(self.process.stdout, self.port, False))
            )
        if self.process.stderr is not None:
            self._pipes.append(
                asyncio.create_task(pipe_output(self.process.stderr, self.port, True))
            )

    async def wait(self) -> int:
        """Wait for the process itself to exit.

        Kernels inherit the server's stdout/stderr, so the pipes (and
        ``Process.wait()``, which waits for them) can outlive the server. Only
        the exit code is watched here; see `drain_output`.
        """
        while self.process.returncode is None:
            await asyncio.sleep(_EXIT_POLL_INTERVAL)
        return self.process.returncode

    async def drain_output(self, timeout: float) -> None:
        """Let the output pipes reach EOF for up to ``timeout`` seconds, then stop them."""
        pipes = [p for p in self._pipes if not p.done()]
        if not pipes:
            return
        try:
            await asyncio.wait(pipes, timeout=timeout)
        finally:
            pending = [p for p in pipes if not p.done()]
            for task in pending:
                task.cancel()
        if pending:
            logger.debug(
                f"Stopped reading output of Jupyter process {self.pid}, "
                "still held open by its children"
            )
            await asyncio.gather(*pending, return_exceptions=True)

    def terminate(self) -> None:
        """Ask the process to shut down. Never raises."""
        if self.returncode is not None:
            logger.debug(f"Jupyter process {self.pid} already exited")
            return
        if self.tracked is None:
            logger.debug(f"Jupyter process {self.pid} was never tracked, not signalling")
            return
        # Remember the kernels while they can still be found through the server.
        self._children = track_children(self.tracked)
        signal_tracked_process(self.tracked)

    def kill(self) -> None:
        """Kill the process and the kernels it started. Never raises.

        Kernels seen by `terminate` are killed even if the server already exited.
        """
        if self.tracked is not None:
            kill_process_tree(self.tracked, known_children=self._children)


async def spawn_kernel_process(port: int, settings: AppSettings) -> KernelProcess:
    """Launch the Jupyter server on ``port``.

    Raises:
        SpawnFailure: If the executable cannot be started
    """
    args = build_launch_args(settings, port)
    host = resolve_server_address(settings.jupyter_args)
    logger.info(f"Using jupyter server address {host}")

    try:
        process = await asyncio.create_subprocess_exec(
            settings.jupyter_executable,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=os.environ.copy(),
            limit=_STREAM_LIMIT,
        )
    except OSError as e:
        raise SpawnFailure(
            f"Failed to launch {settings.jupyter_executable}: {e}",
            details={"args": args},
        ) from e

    logger.info(f"Jupyter process started with pid {process.pid} and args {args}")
    kernel = KernelProcess(process, port=port, host=host, args=args)
    kernel.start_output_pipes()
    return kernel
