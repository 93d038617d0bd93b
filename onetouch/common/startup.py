"""Startup-time helpers for safe config logging."""

from onetouch.common.config import CommonSettings
from onetouch.common.errors import ConfigurationError
from onetouch.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def _safe_value(name: str, value) -> str:
    """Return a printable config value, redacting secret-like settings."""

    if value in (None, ""):
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(config: CommonSettings, keys: list[str]) -> None:
    """Log selected settings for quick troubleshooting."""

    snapshot = {"service": config.service_name}
    for key in keys:
        snapshot[key] = _safe_value(key, getattr(config, key, None))
    logger.info("startup_config=%s", snapshot)


def require_provider_credentials(config: CommonSettings) -> None:
    """Fail fast when the service starts without provider credentials."""

    missing = [
        name
        for name in ("onetouch_app_id", "onetouch_secret_key", "merchant_recipient")
        if not getattr(config, name)
    ]
    if missing:
        raise ConfigurationError(f"missing OneTouch settings: {', '.join(missing)}", {"missing": missing})
