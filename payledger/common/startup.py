"""Startup-time helpers for safe config logging."""

from payledger.common.config import CommonSettings
from payledger.common.logging import logger


_SECRET_MARKERS = ("key", "secret", "password", "token")


def _safe_value(name: str, value) -> str:
    """Redact secret-like fields and credentials embedded in URLs."""

    if any(marker in name for marker in _SECRET_MARKERS):
        return "<redacted>"
    text = str(value)
    if "://" in text and "@" in text:
        scheme, rest = text.split("://", 1)
        return f"{scheme}://<redacted>@{rest.split('@', 1)[1]}"
    return text


def log_startup_config(config: CommonSettings) -> dict[str, str]:
    """Log the effective configuration for quick troubleshooting."""

    safe = {name: _safe_value(name, value) for name, value in config.model_dump().items()}
    logger.info("startup_config=%s", safe)
    return safe
