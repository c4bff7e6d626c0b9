"""Startup-time logging of the effective configuration."""

from urllib.parse import urlsplit, urlunsplit

from momorecon.common.config import CommonSettings
from momorecon.common.logging import logger


_SECRET_MARKERS = ("key", "secret", "password", "token")


def _strip_credentials(url: str) -> str:
    """Drop `user:password@` from a DSN or URL, keep host and database."""

    parts = urlsplit(url)
    if not parts.password and not parts.username:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


def safe_value(name: str, value):
    """Render one setting for the log, never exposing secret material."""

    if any(marker in name for marker in _SECRET_MARKERS):
        return "<set>" if value else "<unset>"
    if isinstance(value, str) and "://" in value:
        return _strip_credentials(value)
    return value


def log_startup_config(config: CommonSettings, fields: list[str]) -> dict:
    """Log the parsed value of selected settings fields and return them."""

    snapshot = {"service": config.service_name}
    for name in fields:
        snapshot[name] = safe_value(name, getattr(config, name))
    logger.info("startup_config=%s", snapshot)
    return snapshot
