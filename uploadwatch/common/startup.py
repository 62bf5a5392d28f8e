"""Startup-time helpers for safe config logging."""

from uploadwatch.common.config import CommonSettings
from uploadwatch.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token")


def redacted_settings(config: CommonSettings, fields: list[str]) -> dict[str, object]:
    """Pick `fields` from settings, masking secret-looking values."""

    values = config.model_dump()
    picked: dict[str, object] = {}
    for field in fields:
        value = values.get(field, "<unset>")
        if any(marker in field for marker in SECRET_MARKERS):
            value = "<redacted>" if value else "<unset>"
        picked[field] = value
    return picked


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    """Log selected startup config values for quick troubleshooting."""

    logger.info("startup_config=%s", {"service": config.service_name, **redacted_settings(config, fields)})
