"""Optional crash reporting for failed sync cycles.

This module provides:
- init_error_tracking: Enable reporting when a DSN is configured
- capture_exception: Report a cycle failure (no-op unless enabled)

Only errors are sent: no performance tracing, no default PII, and log
records never become events on their own. Events whose stack does not
pass through flowvault code are dropped.
"""

from __future__ import annotations

import logging
from importlib.metadata import PackageNotFoundError, version
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.utils import BadDsn

logger = logging.getLogger(__name__)

PACKAGE = "flowvault"

_enabled = False


def _release() -> str | None:
    try:
        return f"{PACKAGE}@{version(PACKAGE)}"
    except PackageNotFoundError:
        return None


def _from_flowvault(event: dict[str, Any]) -> bool:
    """Check whether any exception frame belongs to flowvault."""
    for exc in (event.get("exception") or {}).get("values") or []:
        for frame in (exc.get("stacktrace") or {}).get("frames") or []:
            if (frame.get("module") or "").startswith(PACKAGE):
                return True
    return False


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    return event if _from_flowvault(event) else None


def init_error_tracking(dsn: str, environment: str = "production") -> bool:
    """Initialize error reporting.

    Does nothing without a DSN or when already initialized. An invalid DSN
    is logged and leaves reporting disabled.

    Args:
        dsn: Project DSN from the settings file.
        environment: Environment tag attached to events.

    Returns:
        True if reporting is enabled.
    """
    global _enabled
    if _enabled or not dsn:
        return _enabled
    try:
        sentry_sdk.init(
            dsn=dsn,
            release=_release(),
            environment=environment,
            send_default_pii=False,
            traces_sample_rate=0.0,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=None)],
            before_send=_before_send,
        )
    except BadDsn as e:
        logger.warning("Error reporting disabled: %s", e)
        return False
    _enabled = True
    logger.debug("Error reporting enabled")
    return True


def capture_exception(error: BaseException, **context: Any) -> None:
    """Report an exception with extra cycle context."""
    if not _enabled:
        return
    sentry_sdk.capture_exception(error, contexts={"sync": context})
