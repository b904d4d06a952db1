"""Startup-time logging of the effective settlement configuration."""

from storepay.common.config import CommonSettings, settings
from storepay.common.logging import logger

_SECRET_MARKERS = ("key", "secret", "password", "token", "database_url")


def _display(name: str, value):
    if value is None or value == "":
        return "<unset>"
    if any(marker in name for marker in _SECRET_MARKERS):
        return "<redacted>"
    return value


def log_startup_config(fields: list[str], config: CommonSettings = settings) -> dict:
    """Log selected settings (secrets redacted) and warn about unsafe webhook modes.

    Returns the logged snapshot.
    """

    snapshot = {name: _display(name, getattr(config, name)) for name in fields}
    logger.info("startup service=%s config=%s", config.service_name, snapshot)
    if config.webhook_test_mode:
        logger.warning("webhook test mode enabled: signature failures will not reject deliveries")
    elif not config.gateway_webhook_secret:
        logger.warning("gateway webhook secret unset: every webhook delivery will be rejected")
    return snapshot
