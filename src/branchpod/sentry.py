"""Logging and Sentry setup for branchpod."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

if TYPE_CHECKING:
    from sentry_sdk.types import Event

    from branchpod.config import Settings

HEALTH_TRANSACTIONS = {"/health", "/metrics"}
SENSITIVE_HEADERS = ("authorization", "cookie", "x-branchpod-token")


def configure_logging(
    service_name: str,
    log_level: int | str = logging.INFO,
    json_format: bool = False,
) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog on top of Python's standard logging.

    Call once at startup, after init_sentry(). Development uses the coloured
    console renderer, other environments emit JSON lines.

    Args:
        service_name: Name bound to the returned logger
        log_level: Minimum log level (int or level name)
        json_format: Render JSON instead of console output

    Returns:
        Configured structlog logger
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates on reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        _add_sentry_breadcrumb,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(service_name))


def _add_sentry_breadcrumb(
    _logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Mirror structlog events into Sentry breadcrumbs (no-op without a client)."""
    standard_keys = {"event", "level", "timestamp", "logger"}
    extra_data = {k: v for k, v in event_dict.items() if k not in standard_keys}

    sentry_sdk.add_breadcrumb(
        message=str(event_dict.get("event", "")),
        category="log",
        level=event_dict.get("level", method_name),
        data=extra_data or None,
    )
    return event_dict


def _before_send(event: Event, _hint: dict[str, Any]) -> Event | None:
    request = event.get("request")
    if request is not None:
        headers = request.get("headers")
        if isinstance(headers, dict):
            for header in SENSITIVE_HEADERS:
                if header in headers:
                    headers[header] = "[Filtered]"
    return event


def _before_send_transaction(event: Event, _hint: dict[str, Any]) -> Event | None:
    if event.get("transaction", "") in HEALTH_TRANSACTIONS:
        return None
    return event


def init_sentry(settings: Settings, release: str) -> bool:
    """Initialize the Sentry SDK when a DSN is configured.

    Returns:
        True if Sentry was initialized, False if no DSN was provided
    """
    if not settings.sentry_dsn:
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=release,
        traces_sample_rate=(
            1.0 if settings.is_development() else settings.sentry_traces_sample_rate
        ),
        integrations=[
            StarletteIntegration(transaction_style="url"),
            FastApiIntegration(transaction_style="url"),
            AsyncioIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        before_send=_before_send,
        before_send_transaction=_before_send_transaction,
    )
    sentry_sdk.set_tag("service", "branchpod")
    return True
