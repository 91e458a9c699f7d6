"""Configuration for GridPilot."""

from gridpilot.config.settings import Settings, get_settings, load_defaults_config

__all__ = ["Settings", "get_settings", "load_defaults_config"]
