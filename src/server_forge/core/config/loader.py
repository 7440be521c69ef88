"""
Configuration loader — reads server-forge.yml into a Configuration.

Reads YAML, validates against the pydantic model, and returns the
frozen Configuration every planning and execution call receives.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from server_forge.core.errors import ConfigurationError
from server_forge.core.models.configuration import Configuration

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "server-forge.yml"


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for server-forge.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to server-forge.yml, or None if not found.
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


def parse_configuration(data: object, source: str = "<data>") -> Configuration:
    """Validate an already-parsed mapping.

    The mapping may wrap everything under a ``server`` key or be flat.

    Raises:
        ConfigurationError: The data is not a mapping or fails validation.
    """
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a YAML mapping in {source}, got {type(data).__name__}"
        )
    if "server" in data and isinstance(data["server"], dict):
        data = data["server"]

    try:
        return Configuration.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {source}: {e}") from e


def load_configuration(path: Path | None = None) -> Configuration:
    """Load and validate a server configuration.

    Args:
        path: Explicit path to server-forge.yml. If None, searches upward.

    Returns:
        Validated, frozen Configuration.

    Raises:
        ConfigurationError: If the file is missing or invalid.
    """
    if path is None:
        path = find_config_file()

    if path is None:
        raise ConfigurationError(
            f"No {CONFIG_FILE} found. Create one, or specify --config."
        )

    if not path.is_file():
        raise ConfigurationError(f"Config file not found: {path}")

    logger.debug("Loading server config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    configuration = parse_configuration(data, source=str(path))
    logger.info(
        "Loaded %s configuration (%s, security %s)",
        configuration.distro_family,
        configuration.server_role,
        configuration.security_level,
    )
    return configuration


def config_root(config_path: Path) -> Path:
    """Get the directory holding a config file."""
    return config_path.parent.resolve()
