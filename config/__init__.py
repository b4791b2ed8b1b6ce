"""Configuration for txstream."""

from .settings import Settings, settings

__all__ = [
    "Settings",
    "settings",
]
