"""Loading `AppSettings` from a JSON file."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from nbgate.constants import SETTINGS_PATH_ENV
from nbgate.errors import SettingsError
from nbgate.models import AppSettings


def resolve_settings_path(path: Path | None = None) -> Path | None:
    """Return the settings file to use: ``path``, else ``$NBGATE_CONFIG``."""
    if path is not None:
        return path
    dotenv_file = Path.cwd() / ".env"
    if dotenv_file.exists():
        load_dotenv(dotenv_file)
    env_path = os.environ.get(SETTINGS_PATH_ENV)
    return Path(env_path) if env_path else None


def load_settings(path: Path | None = None) -> AppSettings:
    """Load settings from a JSON file, or defaults when no file is configured.

    Raises:
        SettingsError: If the file is missing, unreadable or invalid
    """
    settings_path = resolve_settings_path(path)
    if settings_path is None:
        return AppSettings()

    try:
        raw = settings_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SettingsError(f"Cannot read settings file {settings_path}: {e}") from e

    try:
        return AppSettings.model_validate_json(raw)
    except ValidationError as e:
        raise SettingsError(
            f"Invalid settings file {settings_path}",
            details={"errors": e.error_count()},
        ) from e
