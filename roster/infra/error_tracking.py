# roster/infra/error_tracking.py
"""
Error-tracking sink (Sentry) and operational alerts (Slack webhook).

Both are observability side effects: they are never consulted for
control flow, and a failure to report is logged, never raised and
never retried.
"""
from __future__ import annotations

from typing import Any

import aiohttp
import sentry_sdk

from roster.config import settings
from roster.infra.http_client import get_alert_session
from roster.infra.logging_config import get_logger
from roster.infra.metrics import inc_counter

logger = get_logger(__name__)

_sentry_enabled = False


def init_error_tracking(dsn: str | None = None, environment: str | None = None) -> bool:
    """Initialise Sentry once at startup. Returns False when no DSN is configured."""
    global _sentry_enabled

    dsn = dsn if dsn is not None else settings.sentry_dsn
    if not dsn:
        logger.info("Sentry disabled (no DSN)")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=environment or settings.app_env,
        traces_sample_rate=0.0,
        send_default_pii=False,
    )
    _sentry_enabled = True
    logger.info("Sentry error tracking initialised")
    return True


class ErrorTracker:
    """
    Thin wrapper over sentry_sdk so the core depends on ``capture`` only.

    Every capture is also logged at ERROR, so failures stay visible
    with Sentry disabled (dev, tests).
    """

    def capture(self, exc: BaseException, **context: Any) -> None:
        inc_counter("errors_captured", error=exc.__class__.__name__)
        logger.error(
            f"Captured {exc.__class__.__name__}: {exc}",
            extra={k: v for k, v in context.items() if k.endswith("_id")},
        )
        if not _sentry_enabled:
            return
        try:
            sentry_sdk.capture_exception(
                exc, tags={key: str(value) for key, value in context.items()},
            )
        except Exception as report_exc:
            logger.warning(f"Sentry capture failed: {report_exc}")


async def send_ops_alert(text: str, *, webhook_url: str | None = None) -> bool:
    """
    Post a message to the operational Slack channel.

    Best-effort side effect: returns False on any failure, which is
    logged and never propagated or retried.
    """
    url = webhook_url if webhook_url is not None else settings.slack_webhook_url
    if not url:
        logger.debug(f"Ops alert skipped (no Slack webhook): {text[:80]}")
        return False

    try:
        session = get_alert_session()
        async with session.post(url, json={"text": text}) as resp:
            if resp.status >= 400:
                body = await resp.text()
                logger.warning(f"Ops alert rejected: status={resp.status}, body={body[:200]}")
                inc_counter("ops_alerts_total", status="rejected")
                return False
    except (aiohttp.ClientError, TimeoutError) as exc:
        logger.warning(f"Ops alert failed: {exc}")
        inc_counter("ops_alerts_total", status="error")
        return False

    inc_counter("ops_alerts_total", status="sent")
    return True


class SlackAlerter:
    """Callable alert sink injected into services (tests substitute a recorder)."""

    def __init__(self, webhook_url: str | None = None):
        self._webhook_url = webhook_url

    async def __call__(self, text: str) -> bool:
        return await send_ops_alert(text, webhook_url=self._webhook_url)


_tracker = ErrorTracker()


def get_error_tracker() -> ErrorTracker:
    return _tracker
