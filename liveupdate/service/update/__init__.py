"""Pending-update bookkeeping per bundle path prefix."""

from .settings_store import (
    UpdateSettingsStore,
    SettingsStoreError,
    MalformedSettingsError,
    get_settings_store,
    reset_settings_store,
    create_update_routes,
)

__all__ = [
    "UpdateSettingsStore",
    "SettingsStoreError",
    "MalformedSettingsError",
    "get_settings_store",
    "reset_settings_store",
    "create_update_routes",
]
