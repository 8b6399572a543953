"""
Settings loader — reads settings.yml into the Settings model.

Resolution order for the file:
    --config flag  >  NAT_SOCKS_CONFIG env var  >  /etc/nat-socks/settings.yml

A missing default file is not an error (built-in defaults apply); a
missing explicit file is. Scalar fields can then be overridden with
``NAT_SOCKS_<FIELD>`` environment variables, list fields with a
comma-separated value.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from natsocks.core.errors import ConfigurationError
from natsocks.core.models.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = Path("/etc/nat-socks/settings.yml")
ENV_PREFIX = "NAT_SOCKS_"
CONFIG_ENV_VAR = "NAT_SOCKS_CONFIG"

# Not settings fields even though they share the prefix
_RESERVED_ENV = {"CONFIG", "LOG_LEVEL", "LOG_FILE", "LOG_FILE_LEVEL"}


def find_settings_file(
    explicit: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[Path | None, bool]:
    """Locate the settings file.

    Returns:
        ``(path, required)`` — ``required`` is True when the operator
        named the file explicitly, so its absence must be reported.
    """
    env = os.environ if env is None else env
    if explicit is not None:
        return explicit, True
    from_env = env.get(CONFIG_ENV_VAR)
    if from_env:
        return Path(from_env), True
    if DEFAULT_SETTINGS_FILE.is_file():
        return DEFAULT_SETTINGS_FILE, False
    return None, False


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    """Collect NAT_SOCKS_* overrides that name a Settings field."""
    fields = Settings.model_fields
    overrides: dict[str, Any] = {}
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):]
        if name in _RESERVED_ENV:
            continue
        field = name.lower()
        if field not in fields:
            logger.debug("Ignoring unknown settings override %s", key)
            continue
        annotation = str(fields[field].annotation)
        if annotation.startswith("list"):
            overrides[field] = [v.strip() for v in value.split(",") if v.strip()]
        else:
            overrides[field] = value
    return overrides


def load_settings(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Load and validate settings.

    Args:
        path: Explicit settings file. If None, searches the defaults.
        env: Environment mapping (default: ``os.environ``).

    Returns:
        Validated Settings model.

    Raises:
        ConfigurationError: If an explicit file is missing or the content
            is invalid.
    """
    env = os.environ if env is None else env
    settings_path, required = find_settings_file(path, env)

    data: dict[str, Any] = {}
    if settings_path is not None:
        if not settings_path.is_file():
            if required:
                raise ConfigurationError(f"Settings file not found: {settings_path}")
        else:
            logger.debug("Loading settings from %s", settings_path)
            try:
                raw = settings_path.read_text(encoding="utf-8")
            except OSError as e:
                raise ConfigurationError(f"Cannot read {settings_path}: {e}") from e

            try:
                loaded = yaml.safe_load(raw)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {settings_path}: {e}") from e

            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                raise ConfigurationError(
                    f"Expected a YAML mapping in {settings_path}, "
                    f"got {type(loaded).__name__}"
                )
            # Allow everything to sit under a top-level "settings" key
            data = dict(loaded.get("settings", loaded))

    data.update(_env_overrides(env))

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e

    logger.info(
        "Settings loaded (service=%s, pinned=%s)",
        settings.service_name, settings.pinned_version,
    )
    return settings
