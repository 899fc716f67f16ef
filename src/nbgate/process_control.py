"""Process tracking and best-effort signalling for the Jupyter process.

Design goals:
- Only signal processes we started (tracked by pid + create_time).
- Never raise from a stop path: the process may already be gone.
- Killing takes the kernel children down with the server.
"""

from __future__ import annotations

import signal
from typing import ClassVar

import psutil
from pydantic import BaseModel, ConfigDict

from nbgate.logging import LogComponent, get_logger

logger = get_logger(LogComponent.PROCESS_CONTROL)

# SIGHUP asks `jupyter notebook` to shut down; Windows has no SIGHUP.
GRACEFUL_SIGNAL: signal.Signals = getattr(signal, "SIGHUP", signal.SIGTERM)


class TrackedProcess(BaseModel):
    """A process we started and are allowed to manage."""

    pid: int | None = None
    create_time: float | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


def track_process(pid: int) -> TrackedProcess | None:
    """Create a TrackedProcess for a running PID, recording create_time."""
    try:
        proc = psutil.Process(pid)
        return TrackedProcess(pid=pid, create_time=float(proc.create_time()))
    except (psutil.Error, OSError):
        return None


def validate_tracked(tp: TrackedProcess) -> psutil.Process | None:
    """Return a psutil.Process only if PID matches create_time (prevents PID reuse bugs)."""
    if tp.pid is None or tp.create_time is None:
        return None
    try:
        proc = psutil.Process(tp.pid)
        if abs(float(proc.create_time()) - float(tp.create_time)) > 0.001:
            return None
        return proc
    except (psutil.Error, OSError):
        return None


def signal_tracked_process(
    tp: TrackedProcess, sig: signal.Signals = GRACEFUL_SIGNAL
) -> bool:
    """Send ``sig`` to a tracked process. Returns True if the signal was delivered."""
    proc = validate_tracked(tp)
    if proc is None:
        logger.debug(f"Process {tp.pid} is already gone, not sending {sig.name}")
        return False
    try:
        proc.send_signal(sig)
        return True
    except (psutil.Error, OSError) as e:
        logger.debug(f"Failed to send {sig.name} to process {tp.pid}: {e}")
        return False


def track_children(tp: TrackedProcess) -> list[TrackedProcess]:
    """Snapshot the live descendants of a tracked process.

    Descendants are reparented once the root exits, so they can only be found
    through the root while it is alive.
    """
    root = validate_tracked(tp)
    if root is None:
        return []
    try:
        children = root.children(recursive=True)
    except (psutil.Error, OSError):
        return []

    tracked: list[TrackedProcess] = []
    for child in children:
        try:
            tracked.append(
                TrackedProcess(pid=child.pid, create_time=float(child.create_time()))
            )
        except (psutil.Error, OSError):
            continue
    return tracked


def kill_process_tree(
    tp: TrackedProcess,
    timeout: float = 1.0,
    known_children: list[TrackedProcess] | None = None,
) -> None:
    """Kill a tracked process and its descendants (best-effort).

    ``known_children`` (from `track_children`) are killed even when the root
    is already gone.
    """
    procs: list[psutil.Process] = []
    root = validate_tracked(tp)
    if root is not None:
        try:
            procs.extend(root.children(recursive=True))
        except (psutil.Error, OSError):
            pass
        procs.append(root)

    seen = {p.pid for p in procs}
    for child in known_children or []:
        proc = validate_tracked(child)
        if proc is not None and proc.pid not in seen:
            procs.append(proc)
            seen.add(proc.pid)

    if not procs:
        return

    for p in procs:
        try:
            p.kill()
        except (psutil.Error, OSError):
            pass

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    if alive:
        logger.warning(
            f"Processes still alive after kill: {[p.pid for p in alive]}"
        )
