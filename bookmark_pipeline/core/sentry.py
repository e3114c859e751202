"""Sentry initialization and configuration."""

import os
from typing import Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from bookmark_pipeline import __version__
from bookmark_pipeline.config import Settings

logger = structlog.get_logger(__name__)


def _before_send(event: dict, hint: dict) -> Optional[dict]:
    """
    Drop 4xx client errors.

    Bad enqueue payloads and unknown job ids are caller mistakes, not
    service faults.
    """
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]
        status_code = getattr(exc_value, "status_code", None)
        if isinstance(status_code, int) and 400 <= status_code < 500:
            return None

    response = event.get("contexts", {}).get("response", {})
    if 400 <= response.get("status_code", 0) < 500:
        return None

    return event


def init_sentry(settings: Settings, component: str = "api") -> bool:
    """
    Initialize Sentry if DSN is configured.

    ``component`` tags events with the process role (api, snapshot-worker,
    index-worker, maintenance-worker, scheduler).

    Returns True if Sentry was initialized, False otherwise.
    """
    if not settings.sentry_dsn:
        return False

    sentry_logging = LoggingIntegration(
        level=None,  # Keep normal log levels
        event_level="ERROR",  # Only ERROR+ become Sentry events
    )

    integrations: list = [sentry_logging]
    if component == "api":
        integrations.extend(
            [
                StarletteIntegration(transaction_style="endpoint"),
                FastApiIntegration(transaction_style="endpoint"),
            ]
        )

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        release=os.environ.get("GIT_SHA", f"bookmark-pipeline@{__version__}"),
        integrations=integrations,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        attach_stacktrace=True,
        before_send=_before_send,
    )

    sentry_sdk.set_tag("service", "bookmark-pipeline")
    sentry_sdk.set_tag("component", component)

    logger.info(
        "sentry_initialized",
        environment=settings.sentry_environment,
        component=component,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )

    return True
