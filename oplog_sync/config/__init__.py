"""
Configuration loading for oplog-sync.
"""

from .settings import (
    DestinationSettings,
    LoggingSettings,
    Settings,
    SourceSettings,
    SyncSettings,
    get_settings,
    reload_settings,
)

__all__ = [
    "DestinationSettings",
    "LoggingSettings",
    "Settings",
    "SourceSettings",
    "SyncSettings",
    "get_settings",
    "reload_settings",
]
