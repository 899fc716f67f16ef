"""
Exception classes for nbgate.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base exception for nbgate."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details: dict[str, Any] = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{super().__str__()} - {self.details}"
        return super().__str__()


class SpawnFailure(GatewayError):
    """Raised when the Jupyter process could not be launched."""


class KernelExitedError(SpawnFailure):
    """Raised when the Jupyter process exits before it starts listening."""


class ReadinessTimeout(GatewayError):
    """Raised when the Jupyter port does not accept connections in time."""


class SettingsError(GatewayError):
    """Raised when the settings file cannot be read or validated."""
