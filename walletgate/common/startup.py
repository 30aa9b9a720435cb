"""Startup-time helpers for safe config logging."""

from walletgate.common.config import WalletGateSettings
from walletgate.common.logging import logger

SECRET_SUFFIXES = ("KEY", "SECRET", "PASSWORD")


def _safe_value(name: str, value) -> str:
    """Return a printable value with simple redaction for secret-like names."""

    if value is None or value == "":
        return "<unset>"
    if name.upper().endswith(SECRET_SUFFIXES):
        return "<redacted>"
    return str(value)


def log_startup_config(settings: WalletGateSettings, keys: list[str]) -> None:
    """Log selected settings for quick troubleshooting."""

    config = {"service": settings.service_name}
    for key in keys:
        config[key.upper()] = _safe_value(key, getattr(settings, key, None))
    logger.info("startup_config=%s", config)
