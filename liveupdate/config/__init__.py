"""Daemon configuration."""

from .settings import DaemonConfig, get_config, get_version

__all__ = [
    "DaemonConfig",
    "get_config",
    "get_version",
]
