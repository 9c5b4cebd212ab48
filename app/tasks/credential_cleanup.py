"""
Periodic removal of expired (and, for single-use link kinds, spent) credentials.
"""
from __future__ import annotations

import logging

import db
from app.tasks import celery_app
from config import Config
from services.credentials import CredentialRegistry
from utils import StorageFailure


_log = logging.getLogger("tasks")


def run_cleanup(store: db.DocumentStore, cfg: Config) -> dict[str, int]:
    removed = CredentialRegistry(store, cfg).cleanup_all()
    _log.info("credential cleanup removed=%s total=%s", removed, sum(removed.values()))
    return removed


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def cleanup_expired_credentials(self):
    store = db.get_document_store() if db.SessionLocal is not None else db.create_engine_from_env()
    try:
        removed = run_cleanup(store, Config())
    except StorageFailure as e:
        _log.warning("credential cleanup failed attempt=%s error=%s", self.request.retries + 1, e)
        raise self.retry(exc=e)
    return {"task_id": self.request.id, "removed": removed}
