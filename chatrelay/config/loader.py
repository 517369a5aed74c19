"""Locate, load and write the chatrelay config file."""

import json
import os
from pathlib import Path
from typing import Any

from loguru import logger

from chatrelay.config.schema import Config
from chatrelay.utils.helpers import format_error

DEFAULT_CONFIG_DIR = Path.home() / ".chatrelay"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"
CONFIG_PATH_ENV = "CHATRELAY_CONFIG"


def resolve_config_path(config_path: Path | None = None) -> Path:
    """Explicit path, then ``$CHATRELAY_CONFIG``, then ``~/.chatrelay/config.json``."""
    if config_path is not None:
        return Path(config_path).expanduser()
    env_path = os.environ.get(CONFIG_PATH_ENV, "").strip()
    return Path(env_path).expanduser() if env_path else DEFAULT_CONFIG_FILE


def _read_config_data(path: Path) -> dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _merge(defaults: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from the config file and ``CHATRELAY_*`` variables.

    Values in the file win over environment variables, which win over
    defaults. An unreadable or invalid file is reported and ignored; the
    defaults answer only the relay's own number.

    Args:
        config_path: Config file. See ``resolve_config_path`` for the fallbacks.

    Returns:
        Loaded configuration.
    """
    path = resolve_config_path(config_path)
    if not path.exists():
        logger.debug(f"No config at {path}, using defaults")
        return Config()

    try:
        config = Config(**_read_config_data(path))
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring config {path}: {format_error(e)}")
        return Config()

    logger.debug(f"Config loaded from {path}")
    return config


def save_default_config(config_path: Path | None = None) -> Path:
    """
    Write the config file, keeping any settings it already holds.

    A fresh install gets the defaults. On an existing file, settings added
    since it was written are filled in and every stored value is kept. A
    file that cannot be parsed is moved aside to ``<name>.bak`` first.
    Environment overrides are never written to disk.

    Returns:
        Path where config was saved.
    """
    path = resolve_config_path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    existing: dict[str, Any] = {}
    if path.exists():
        try:
            existing = _read_config_data(path)
        except (OSError, ValueError) as e:
            backup = path.with_name(f"{path.name}.bak")
            path.replace(backup)
            logger.warning(f"Config {path} is invalid ({format_error(e)}); moved it to {backup}")

    # model_construct skips the settings sources, so CHATRELAY_* values stay out of the file.
    defaults = Config.model_construct().model_dump(mode="json")
    data = _merge(defaults, existing)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    logger.info(f"Config {'updated' if existing else 'written'} at {path}")
    return path


def ensure_workspace(config: Config) -> Path:
    """
    Ensure workspace and data directories exist and return the workspace path.

    Args:
        config: Application configuration.

    Returns:
        Resolved workspace path.
    """
    workspace = config.workspace_path
    workspace.mkdir(parents=True, exist_ok=True)

    (workspace / "transcripts").mkdir(exist_ok=True)
    config.data_path.mkdir(parents=True, exist_ok=True)
    config.session_store_path.parent.mkdir(parents=True, exist_ok=True)

    return workspace
