"""
Configuration loader: reads infra.yml into RuntimeConfig.

The file is optional: without one every default applies.  Environment
variables override the file:

    INFRA_ENV / ENVIRONMENT      → environment
    INFRA_DATA_DIR               → data_dir
    INFRA_BIN_DIR                → bin_dir
    INFRA_<SERVICE>_PORT         → ports.<service>   (e.g. INFRA_NATS_S3_PORT)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from infra.core.errors import ConfigError
from infra.core.models.config import PortsConfig, RuntimeConfig

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "infra.yml"

__all__ = [
    "CONFIG_FILE",
    "ConfigError",
    "apply_env_overrides",
    "ensure_app_directories",
    "find_config_file",
    "load_config",
]


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for infra.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to infra.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> RuntimeConfig:
    """Load and validate the runtime configuration.

    Args:
        path: Explicit path to infra.yml.  If None, searches upward and
            falls back to defaults when nothing is found.
        env: Environment mapping for overrides (default: os.environ).

    Returns:
        Validated RuntimeConfig.

    Raises:
        ConfigError: If an explicit file is missing or any file is invalid.
    """
    if path is None:
        path = find_config_file()

    data: dict[str, Any] = {}
    if path is not None:
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        data = _read_yaml(path)

    base_dir = path.parent.resolve() if path is not None else None
    data = apply_env_overrides(data, os.environ if env is None else env)

    try:
        config = RuntimeConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid infra configuration: {e}") from e

    # Relative directories in a config file are relative to that file
    if base_dir is not None:
        updates = {}
        for key in ("data_dir", "bin_dir"):
            value = getattr(config, key)
            if not Path(value).expanduser().is_absolute():
                updates[key] = str(base_dir / value)
        if updates:
            config = config.model_copy(update=updates)

    logger.info(
        "Loaded config (environment=%s, data_dir=%s, source=%s)",
        config.environment, config.data_dir, path or "defaults",
    )
    return config


def _read_yaml(path: Path) -> dict[str, Any]:
    logger.debug("Loading infra config from %s", path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # The YAML may wrap everything under an "infra" key or be flat
    if isinstance(data.get("infra"), dict):
        data = data["infra"]
    return dict(data)


def apply_env_overrides(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Return a copy of ``data`` with environment overrides applied."""
    merged = dict(data)

    environment = env.get("INFRA_ENV") or env.get("ENVIRONMENT")
    if environment:
        merged["environment"] = environment
    if env.get("INFRA_DATA_DIR"):
        merged["data_dir"] = env["INFRA_DATA_DIR"]
    if env.get("INFRA_BIN_DIR"):
        merged["bin_dir"] = env["INFRA_BIN_DIR"]

    ports = dict(merged.get("ports") or {})
    for field_name in PortsConfig.model_fields:
        value = env.get(f"INFRA_{field_name.upper()}_PORT")
        if value:
            ports[field_name] = value
    if ports:
        merged["ports"] = ports

    return merged


def ensure_app_directories(config: RuntimeConfig) -> None:
    """Create the data root and state directory.

    Raises:
        ConfigError: If the directories cannot be created.
    """
    for path in (config.data_path, config.state_dir):
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create runtime directory {path}: {e}") from e
