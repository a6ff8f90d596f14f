"""CTPAT Relay core module.

Shared components used across the API and the worker:
- Configuration management
- Startup settings loading and logging setup
- Domain exception taxonomy
"""

from ctpat.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    DeliverySettings,
    Environment,
    ListingSettings,
    MailProvider,
    S3Settings,
    Settings,
    SMTPSettings,
)
from ctpat.core.settings import configure_logging, load_settings

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "DeliverySettings",
    "Environment",
    "ListingSettings",
    "MailProvider",
    "S3Settings",
    "SMTPSettings",
    "Settings",
    "configure_logging",
    "load_settings",
]
