"""
Celery configuration for background maintenance.

Usage:
    celery -A app.tasks.celery_app worker --beat --loglevel=INFO
"""
from __future__ import annotations

from celery import Celery
from dotenv import load_dotenv

from config import Config


def make_celery(cfg: Config | None = None) -> Celery:
    """
    Create the Celery app with a Redis broker and the credential cleanup schedule.

    Environment variables:
        REDIS_URL: Redis connection URL (default: redis://localhost:6379/0)
        CLEANUP_INTERVAL_MINUTES: Period of the cleanup beat entry (default: 60)
    """
    if cfg is None:
        load_dotenv()
        cfg = Config()

    app = Celery(
        "provisioning",
        broker=cfg.REDIS_URL,
        backend=cfg.REDIS_URL,
        include=["app.tasks.credential_cleanup"],
    )

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        result_expires=86400,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_default_retry_delay=60,
        beat_schedule={
            "cleanup-expired-credentials": {
                "task": "app.tasks.credential_cleanup.cleanup_expired_credentials",
                "schedule": float(cfg.CLEANUP_INTERVAL_MINUTES * 60),
            },
        },
    )

    return app


celery_app = make_celery()
