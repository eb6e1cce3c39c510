"""
Sentry Error Tracking Configuration
Sentry SDK initialization and capture helpers for the DealFlow API.
"""

import logging
from typing import Any
from urllib.parse import urlparse

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from backend.core.config import settings

logger = logging.getLogger(__name__)

HEALTH_PATHS = ("/health", "/health/live", "/health/ready")


def _is_health_url(url: str) -> bool:
    return urlparse(url).path in HEALTH_PATHS


def before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """
    Process events before sending to Sentry.

    Drops health check noise and redacts credentials in request headers.
    """
    request = event.get("request")
    if request and _is_health_url(request.get("url", "")):
        return None

    if request and "headers" in request:
        for header in ("authorization", "cookie", "x-api-key"):
            if header in request["headers"]:
                request["headers"][header] = "[REDACTED]"

    return event


def before_send_transaction(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """Skip performance data for the high-volume health checks."""
    if event.get("transaction", "") in HEALTH_PATHS:
        return None
    return event


def init_sentry() -> bool:
    """
    Initialize Sentry SDK with FastAPI integration.

    Returns:
        bool: True if Sentry was initialized successfully, False otherwise.
    """
    if not settings.sentry_dsn:
        logger.info("Sentry DSN not configured, error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.sentry_environment or settings.environment,
            release=f"dealflow-resilience@{settings.app_version}",
            traces_sample_rate=settings.sentry_traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                StarletteIntegration(transaction_style="endpoint"),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR,
                ),
                SqlalchemyIntegration(),
            ],
            before_send=before_send,
            before_send_transaction=before_send_transaction,
            send_default_pii=False,
            attach_stacktrace=True,
            max_breadcrumbs=50,
            debug=settings.debug and settings.environment == "development",
        )

        sentry_sdk.set_tag("service", "resilience")
        sentry_sdk.set_tag("app_name", settings.app_name)

        logger.info(
            f"Sentry initialized successfully "
            f"(env={settings.sentry_environment or settings.environment}, "
            f"traces={settings.sentry_traces_sample_rate})"
        )
        return True

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False


def capture_exception(error: BaseException, extra: dict[str, Any] | None = None) -> str | None:
    """
    Capture an exception and send to Sentry.

    Args:
        error: The exception to capture
        extra: Optional extra data to attach

    Returns:
        Event ID if captured, None otherwise (including when Sentry is not initialized)
    """
    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(error)


def capture_message(
    message: str,
    level: str = "info",
    extra: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture a message and send to Sentry.

    Args:
        message: The message to capture
        level: Log level (debug, info, warning, error, fatal)
        extra: Optional extra data to attach

    Returns:
        Event ID if captured, None otherwise
    """
    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_message(message, level=level)
