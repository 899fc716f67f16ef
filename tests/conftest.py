from __future__ import annotations

import os
import signal
import stat
import sys
from collections.abc import Generator
from pathlib import Path

import psutil
import pytest

# Starts a long-lived "kernel" that inherits the server's stdout/stderr.
_KERNEL_PREAMBLE = """#!/bin/sh
sleep 30 &
echo $! > "$(dirname "$0")/kernel.pid"
"""


class FakeJupyter:
    """An executable `jupyter` shell script that starts a kernel before ``body`` runs."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.script = directory / "jupyter"

    def write(self, body: str) -> Path:
        self.script.write_text(_KERNEL_PREAMBLE + body)
        self.script.chmod(self.script.stat().st_mode | stat.S_IXUSR)
        return self.script

    def kernel_pid(self) -> int | None:
        pid_file = self.directory / "kernel.pid"
        if not pid_file.exists():
            return None
        text = pid_file.read_text().strip()
        return int(text) if text else None

    def kernel_gone(self) -> bool:
        pid = self.kernel_pid()
        if pid is None:
            return False
        try:
            return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return True

    def cleanup(self) -> None:
        pid = self.kernel_pid()
        if pid is None:
            return
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass


@pytest.fixture
def fake_jupyter(tmp_path: Path) -> Generator[FakeJupyter, None, None]:
    if sys.platform == "win32":
        pytest.skip("needs a POSIX shell")
    jupyter = FakeJupyter(tmp_path)
    try:
        yield jupyter
    finally:
        jupyter.cleanup()
