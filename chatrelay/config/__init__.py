"""Configuration module."""

from chatrelay.config.schema import Config
from chatrelay.config.loader import load_config, save_default_config, ensure_workspace

__all__ = ["Config", "load_config", "save_default_config", "ensure_workspace"]
