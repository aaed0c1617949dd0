"""Retention Engine core module.

Shared components used across the engine:
- Configuration management
- Settings accessor
"""

from retention_engine.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    NotificationSettings,
    PolicySettings,
    S3Settings,
    SchedulerSettings,
    Settings,
    SigningSettings,
)
from retention_engine.core.settings import (
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "NotificationSettings",
    "PolicySettings",
    "S3Settings",
    "SchedulerSettings",
    "Settings",
    "SigningSettings",
    "clear_settings_cache",
    "get_settings",
]
