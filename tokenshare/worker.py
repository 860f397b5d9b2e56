"""
Celery worker for the TokenShare API.

Start worker:    celery -A tokenshare.worker worker --loglevel=info
Start beat:      celery -A tokenshare.worker beat --loglevel=info
Start both:      celery -A tokenshare.worker worker --beat --loglevel=info
"""
from celery import Celery
from celery.schedules import crontab

from tokenshare.core.config import settings
from tokenshare.core.sentry import init_sentry

celery_app = Celery(
    "tokenshare_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
    include=[
        "tokenshare.tasks.ledger",
    ],
)

init_sentry(settings.SENTRY_DSN, settings.SENTRY_ENVIRONMENT, settings.APP_VERSION)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=86400,  # 24h
)

celery_app.conf.beat_schedule = {
    # ── Token purchases whose ledger record never confirmed ─────────────────
    "retry-token-ledger-sync": {
        "task": "tasks.retry_token_ledger_sync",
        "schedule": 600.0,  # every 10 min
    },
    # ── Distribution / supply integrity audit ───────────────────────────────
    "audit-distributions": {
        "task": "tasks.audit_distributions",
        "schedule": crontab(hour=3, minute=0),  # 3am UTC daily
    },
}
