"""Tests for launching the Jupyter process and capturing its output."""

from __future__ import annotations

import asyncio
import sys
from typing import Any
from unittest.mock import Mock, call, patch

import pytest

from nbgate.errors import SpawnFailure
from nbgate.models import AppSettings
from nbgate.process import (
    KernelProcess,
    build_launch_args,
    pipe_output,
    resolve_server_address,
    spawn_kernel_process,
)
from nbgate.process_control import TrackedProcess


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(datalab_root="/datalab", content_dir="/content")


class TestBuildLaunchArgs:
    """Tests for the jupyter argument list."""

    def test_defaults(self, settings: AppSettings) -> None:
        assert build_launch_args(settings, 9000) == [
            "notebook",
            "--port=9000",
            '--FileContentsManager.root_dir="/datalab/"',
            '--MappingKernelManager.root_dir="/content"',
        ]

    def test_subcommand_prepended_before_flags(self, settings: AppSettings) -> None:
        settings = settings.model_copy(update={"jupyter_args": ["--debug", "--no-browser"]})
        args = build_launch_args(settings, 9001)
        assert args[:3] == ["notebook", "--debug", "--no-browser"]
        assert args.count("notebook") == 1

    def test_subcommand_not_duplicated(self, settings: AppSettings) -> None:
        settings = settings.model_copy(update={"jupyter_args": ["notebook", "--debug"]})
        args = build_launch_args(settings, 9001)
        assert args[:2] == ["notebook", "--debug"]
        assert args.count("notebook") == 1
        # Building twice gives the same result.
        assert build_launch_args(settings, 9001) == args

    def test_subcommand_must_match_exactly(self, settings: AppSettings) -> None:
        settings = settings.model_copy(update={"jupyter_args": ["notebooks"]})
        assert build_launch_args(settings, 9001)[:2] == ["notebook", "notebooks"]


class TestResolveServerAddress:
    """Tests for bind address extraction."""

    def test_explicit_ip(self) -> None:
        assert resolve_server_address(["--debug", '--ip="10.0.0.5"']) == "10.0.0.5"

    def test_first_match_wins(self) -> None:
        assert (
            resolve_server_address(['--ip="10.0.0.5"', '--ip="10.0.0.6"']) == "10.0.0.5"
        )

    def test_defaults_to_localhost(self) -> None:
        assert resolve_server_address([]) == "localhost"
        # Unquoted values do not match the expected flag shape.
        assert resolve_server_address(["--ip=10.0.0.5"]) == "localhost"


class TestPipeOutput:
    """Tests for forwarding process output to the log."""

    @pytest.mark.asyncio
    async def test_lines_are_tagged_and_polling_is_dropped(self) -> None:
        stream = asyncio.StreamReader()
        stream.feed_data(b"Serving notebooks\n")
        stream.feed_data(b"[I 12:00] Polling kernel abc\n")
        stream.feed_data(b"\n")
        stream.feed_data(b"Kernel started")
        stream.feed_eof()

        with patch("nbgate.process.log_jupyter_output") as sink:
            await pipe_output(stream, 9000, True)

        assert sink.call_args_list == [
            call("[9000]: Serving notebooks", True),
            call("[9000]: Kernel started", True),
        ]


class TestKernelProcess:
    """Tests for the process handle."""

    def _kernel(self, returncode: int | None) -> KernelProcess:
        process = Mock(pid=4321, returncode=returncode, stdout=None, stderr=None)
        with patch("nbgate.process.track_process", return_value=Mock()):
            return KernelProcess(process, port=9000, host="localhost", args=[])

    def test_terminate_signals_tracked_process(self) -> None:
        kernel = self._kernel(None)
        children = [TrackedProcess(pid=4400, create_time=1.0)]
        with patch("nbgate.process.track_children", return_value=children):
            with patch("nbgate.process.signal_tracked_process") as sig:
                kernel.terminate()
        sig.assert_called_once_with(kernel.tracked)

        # Kernels seen at terminate time are killed with the server.
        with patch("nbgate.process.kill_process_tree") as kill:
            kernel.kill()
        kill.assert_called_once_with(kernel.tracked, known_children=children)

    def test_terminate_after_exit_is_noop(self) -> None:
        kernel = self._kernel(0)
        with patch("nbgate.process.signal_tracked_process") as sig:
            kernel.terminate()
        sig.assert_not_called()

    def test_terminate_untracked_is_noop(self) -> None:
        kernel = self._kernel(None)
        kernel.tracked = None
        with patch("nbgate.process.signal_tracked_process") as sig:
            kernel.terminate()
        sig.assert_not_called()


class TestSpawnKernelProcess:
    """Tests for spawning the process."""

    @pytest.mark.asyncio
    async def test_missing_executable(self, settings: AppSettings) -> None:
        settings = settings.model_copy(
            update={"jupyter_executable": "/nonexistent/nbgate-test/jupyter"}
        )
        with pytest.raises(SpawnFailure) as exc_info:
            await spawn_kernel_process(9000, settings)
        assert isinstance(exc_info.value.__cause__, OSError)
        assert exc_info.value.details["args"][0] == "notebook"

    @pytest.mark.asyncio
    async def test_stderr_is_logged_as_error(self, settings: AppSettings) -> None:
        # The interpreter fails to open a script named "notebook" and says so on stderr.
        settings = settings.model_copy(update={"jupyter_executable": sys.executable})
        with patch("nbgate.process.log_jupyter_output") as sink:
            kernel = await spawn_kernel_process(9123, settings)
            returncode = await asyncio.wait_for(kernel.wait(), timeout=30)
            await kernel.drain_output(timeout=10)

        assert returncode != 0
        assert kernel.host == "localhost"
        assert kernel.args[0] == "notebook"
        error_lines = [c.args[0] for c in sink.call_args_list if c.args[1] is True]
        assert error_lines
        assert all(line.startswith("[9123]: ") for line in error_lines)


class TestKernelsHoldingOutput:
    """The server exits while a kernel it started still holds its stdout/stderr."""

    @pytest.mark.asyncio
    async def test_wait_returns_on_server_exit(
        self, settings: AppSettings, fake_jupyter: Any
    ) -> None:
        script = fake_jupyter.write("echo serving\nsleep 0.3\nexit 3\n")
        settings = settings.model_copy(update={"jupyter_executable": str(script)})

        with patch("nbgate.process.log_jupyter_output") as sink:
            kernel = await spawn_kernel_process(9124, settings)
            returncode = await asyncio.wait_for(kernel.wait(), timeout=10)
            assert returncode == 3
            assert not fake_jupyter.kernel_gone()

            await asyncio.wait_for(kernel.drain_output(timeout=0.2), timeout=5)

        assert call("[9124]: serving", False) in sink.call_args_list
        assert all(task.done() for task in kernel._pipes)

    @pytest.mark.asyncio
    async def test_kill_reaches_kernels_after_server_exit(
        self, settings: AppSettings, fake_jupyter: Any
    ) -> None:
        script = fake_jupyter.write(
            "trap 'exit 0' HUP\nwhile true; do sleep 0.1; done\n"
        )
        settings = settings.model_copy(update={"jupyter_executable": str(script)})

        with patch("nbgate.process.log_jupyter_output"):
            kernel = await spawn_kernel_process(9125, settings)
            for _ in range(200):
                if fake_jupyter.kernel_pid() is not None:
                    break
                await asyncio.sleep(0.025)
            assert fake_jupyter.kernel_pid() is not None

            kernel.terminate()
            assert await asyncio.wait_for(kernel.wait(), timeout=10) == 0
            assert not fake_jupyter.kernel_gone()

            kernel.kill()
            await kernel.drain_output(timeout=1.0)

        assert fake_jupyter.kernel_gone()
