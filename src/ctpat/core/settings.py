"""Startup loader for CTPAT Relay configuration.

Settings are read from the environment exactly once, at process start, by
the API and worker entry points. The resulting frozen Settings object is
then passed explicitly to everything that needs it; there is no module-level
settings cache to mutate.

Usage:
    from ctpat.core.settings import configure_logging, load_settings

    settings = load_settings()
    configure_logging(settings)
    app = create_app(settings)
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from ctpat.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def load_settings(**overrides: object) -> Settings:
    """Load and validate application settings from the environment.

    Args:
        **overrides: Explicit values that take precedence over the environment.

    Returns:
        Validated, frozen Settings instance.

    Raises:
        SystemExit: If settings cannot be loaded (fail-fast behavior).
    """
    try:
        logger.info("Loading application settings from environment")
        settings = Settings(**overrides)  # type: ignore[arg-type]
        validate_settings(settings)

        logger.info(
            "Configuration loaded: environment=%s, mail_provider=%s, "
            "storage_enabled=%s, config_hash=%s",
            settings.environment.value,
            settings.smtp.provider.value,
            settings.s3.enabled,
            settings.get_config_hash()[:16] + "...",
        )
        return settings

    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  - {loc}: {error['msg']}")

        logger.critical(
            "Configuration validation failed:\n%s",
            "\n".join(error_messages),
        )
        raise SystemExit(1) from e

    except ConfigValidationError as e:
        logger.critical(
            "Configuration validation failed: %s (field: %s)",
            e.message,
            e.field or "unknown",
        )
        raise SystemExit(1) from e


def configure_logging(settings: Settings) -> None:
    """Configure root logging for a process entry point."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=LOG_FORMAT,
    )
    # SQL echo is controlled by the database settings, not the root level
    if not settings.database.echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
