"""Ledger housekeeping Celery tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog
from celery import shared_task

logger = structlog.get_logger()

# One loop per worker process: the pooled database connections are bound to
# the loop that opened them and break if a later task runs on a fresh one.
_loop: asyncio.AbstractEventLoop | None = None


def _run_on_worker_loop(coro: Coroutine[Any, Any, Any]) -> Any:
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop.run_until_complete(coro)


@shared_task(name="tasks.retry_token_ledger_sync", bind=True, max_retries=2, default_retry_delay=300)
def retry_token_ledger_sync(self) -> dict:
    """Re-submit token creations the ledger has not confirmed yet."""
    from tokenshare.core.database import async_session_factory
    from tokenshare.modules.token_sale.service import retry_ledger_sync
    from tokenshare.services.ledger import get_ledger

    async def _run() -> dict:
        async with async_session_factory() as db:
            summary = await retry_ledger_sync(db, get_ledger())
        return summary.model_dump()

    try:
        return _run_on_worker_loop(_run())
    except Exception as exc:
        raise self.retry(exc=exc)


@shared_task(name="tasks.audit_distributions", bind=True, max_retries=2, default_retry_delay=600)
def audit_distributions(self) -> dict:
    """Scan for broken distribution and supply invariants; report, never repair."""
    from tokenshare.core.database import async_session_factory
    from tokenshare.modules.distributions.service import find_consistency_violations

    async def _run() -> dict:
        async with async_session_factory() as db:
            issues = await find_consistency_violations(db)
        result = {"issues": len(issues), "kinds": sorted({i.kind for i in issues})}
        logger.info("distributions.audit_complete", **result)
        return result

    try:
        return _run_on_worker_loop(_run())
    except Exception as exc:
        raise self.retry(exc=exc)
