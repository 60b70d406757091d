"""hookrelay core module.

Shared components used across all services:
- Configuration management
- Cached settings accessor
"""

from hookrelay.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    QueueBackend,
    QueueSettings,
    Settings,
    WebhookSettings,
    validate_settings,
)
from hookrelay.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "QueueBackend",
    "QueueSettings",
    "Settings",
    "WebhookSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
    "validate_settings",
]
