"""Startup-time helpers for safe config logging."""

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from tripreceipts.common.config import CommonSettings
from tripreceipts.common.logging import logger

_SECRET_MARKERS = ("password", "secret", "token", "key")


def _safe_value(name: str, value) -> str:
    """Redact secret-like settings and passwords embedded in DSNs."""

    if value is None or value == "":
        return "<unset>"
    if name.endswith(("_dsn", "_url")):
        try:
            return make_url(str(value)).render_as_string(hide_password=True)
        except ArgumentError:
            return str(value)
    if any(marker in name for marker in _SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    """Log selected settings fields for quick troubleshooting."""

    snapshot = {"service": config.service_name}
    for name in fields:
        snapshot[name] = _safe_value(name, getattr(config, name, None))
    logger.info("startup_config=%s", snapshot)
