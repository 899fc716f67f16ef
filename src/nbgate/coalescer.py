"""Collapse concurrent start requests into a single in-flight start."""

from __future__ import annotations

from typing import Callable, TypeAlias

from nbgate.logging import LogComponent, get_logger

StartCallback: TypeAlias = Callable[[BaseException | None], None]

logger = get_logger(LogComponent.SUPERVISOR)


class StartCoalescer:
    """Registry of callbacks waiting on the same start attempt.

    While the registry is non-empty a start is in progress and no second
    spawn may begin. It is drained exactly once per attempt.
    """

    def __init__(self) -> None:
        self._callbacks: list[StartCallback] = []

    @property
    def in_progress(self) -> bool:
        return bool(self._callbacks)

    @property
    def pending(self) -> int:
        return len(self._callbacks)

    def register(self, callback: StartCallback) -> bool:
        """Register a callback for the current start attempt.

        Returns:
            True if this is the first callback, meaning the caller must start
            the attempt; False if an attempt is already running.
        """
        first = not self._callbacks
        self._callbacks.append(callback)
        return first

    def invoke_all(self, error: BaseException | None) -> None:
        """Invoke every registered callback with the same outcome, in order."""
        callbacks = self._callbacks
        self._callbacks = []
        for callback in callbacks:
            try:
                callback(error)
            except Exception:
                logger.exception("Start callback raised")
