"""Startup-time helpers for safe config logging."""

from orderbell.common.config import DispatchSettings
from orderbell.common.logging import logger


SECRET_MARKERS = ("dsn", "key", "secret", "password", "token")


def _safe_value(name: str, value) -> str:
    """Return a printable setting value, redacting secret-like names."""

    if value is None or value == "":
        return "<unset>"
    if any(marker in name.lower() for marker in SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(config: DispatchSettings, keys: list[str]) -> dict[str, str]:
    """Log selected settings for quick troubleshooting and return them."""

    snapshot = {"service": config.service_name}
    for key in keys:
        snapshot[key] = _safe_value(key, getattr(config, key, None))
    logger.info("startup_config=%s", snapshot)
    return snapshot
