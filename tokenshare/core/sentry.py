"""Sentry for the TokenShare API and Celery worker.

Expected domain failures (bad amounts, sold out, not ready, lost races, ledger
outages the caller retries) are answered by the API and never reported.
Broken invariants are, grouped by kind so each one pages once.
"""

from typing import Any

import structlog
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.celery import CeleryIntegration

from tokenshare.core.errors import DomainError

logger = structlog.get_logger()

_SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key"}
# Settings and payload keys that may carry signing material
_SENSITIVE_KEYS = {"private_key", "ledger_private_key", "secret_key", "signed_tx", "raw_transaction"}


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: "[REDACTED]" if str(k).lower() in _SENSITIVE_KEYS else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact(v) for v in value]
    return value


def _before_send(event: dict, hint: dict) -> dict | None:
    exc = (hint.get("exc_info") or (None, None))[1]
    if isinstance(exc, DomainError) and (exc.status_code < 500 or exc.retryable):
        return None

    request = event.get("request", {})
    headers = request.get("headers", {})
    for header in list(headers):
        if header.lower() in _SENSITIVE_HEADERS:
            headers[header] = "[REDACTED]"
    for section in ("extra", "contexts"):
        if section in event:
            event[section] = _redact(event[section])
    return event


def init_sentry(
    dsn: str | None,
    environment: str = "development",
    release: str | None = None,
) -> None:
    """No-op when dsn is None or empty."""
    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    is_prod = environment == "production"

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release,
        traces_sample_rate=0.1 if is_prod else 1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            CeleryIntegration(monitor_beat_tasks=True),
        ],
        send_default_pii=False,
        before_send=_before_send,
    )
    logger.info("sentry_initialized", environment=environment)


def report_consistency_violation(kind: str, message: str, **context: str) -> None:
    """Log and report a broken invariant. Nothing is repaired here."""
    logger.error("consistency_violation", kind=kind, message=message, **context)
    sentry_sdk.capture_message(
        f"Consistency violation: {message}",
        level="error",
        tags={"violation_kind": kind},
        extras=context,
        fingerprint=["consistency-violation", kind],
    )
