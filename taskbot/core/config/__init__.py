"""Configuration module."""

from taskbot.core.config.loader import load_config
from taskbot.core.config.schema import Config

__all__ = ["Config", "load_config"]
