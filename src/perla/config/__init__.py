"""Configuration module for Perla."""

from perla.config.logging import bind_owner, configure_logging
from perla.config.settings import FlatSettings, get_settings

__all__ = ["FlatSettings", "get_settings", "configure_logging", "bind_owner"]
