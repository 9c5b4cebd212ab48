from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from services.entity_store import EntityStore
from utils import ValidationError, new_uuid, to_iso_utc


_log = logging.getLogger("onboarding")

# Intended order only; any stage may be set at any time.
ONBOARDING_STAGES = (
    "pre_onboarding",
    "paperwork",
    "orientation",
    "team_introduction",
    "training",
    "first_assignment",
    "first_review",
    "completed",
)
TASK_STATUSES = ("not_started", "in_progress", "completed", "overdue")
TASK_CATEGORIES = ("paperwork", "training", "introductions", "setup", "other")

ONBOARDING_DOCUMENT = "onboarding"


def _check_stage(stage: Any) -> str:
    s = str(stage or "").strip()
    if s not in ONBOARDING_STAGES:
        raise ValidationError(f"Invalid onboarding stage: {stage!r}")
    return s


def _check_progress(progress: Any) -> int:
    if isinstance(progress, bool) or not isinstance(progress, int):
        raise ValidationError("progress must be an integer")
    if progress < 0 or progress > 100:
        raise ValidationError("progress must be between 0 and 100")
    return progress


def _check_task_status(status: Any) -> str:
    s = str(status or "").strip()
    if s not in TASK_STATUSES:
        raise ValidationError(f"Invalid task status: {status!r}")
    return s


def build_onboarding_record(
    *,
    start_date: str,
    target_completion_date: str,
    tasks: Optional[list[dict[str, Any]]] = None,
    buddy: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict[str, Any]:
    """Fresh onboarding document: stage pre_onboarding, progress 0, normalized tasks."""
    seen: set[str] = set()
    normalized: list[dict[str, Any]] = []
    for t in tasks or []:
        task = dict(t)
        task_id = str(task.get("id") or "").strip() or new_uuid()
        if task_id in seen:
            raise ValidationError(f"Duplicate task id: {task_id}")
        seen.add(task_id)
        task["id"] = task_id
        task["title"] = str(task.get("title") or "")
        task["description"] = str(task.get("description") or "")
        task["status"] = _check_task_status(task.get("status") or "not_started")
        category = str(task.get("category") or "other")
        if category not in TASK_CATEGORIES:
            raise ValidationError(f"Invalid task category: {category!r}")
        task["category"] = category
        task["required"] = bool(task.get("required", True))
        normalized.append(task)

    record: dict[str, Any] = {
        "stage": ONBOARDING_STAGES[0],
        "progress": 0,
        "startDate": str(start_date or ""),
        "targetCompletionDate": str(target_completion_date or ""),
        "tasks": normalized,
    }
    if buddy:
        record["buddy"] = str(buddy)
    if notes:
        record["notes"] = str(notes)
    return record


class OnboardingService:
    """
    Stage/progress/task updates on an entity's onboarding sub-document.

    Every operation is one locked read-modify-write of the whole document, so concurrent
    changes to different parts of the record serialize instead of overwriting each other.
    Returns the serialized entity, or None when the entity is not in the organization.
    """

    def __init__(self, entities: EntityStore):
        self._entities = entities

    def advance_stage(self, entity_id: str, organization_id: str, new_stage: str) -> Optional[dict[str, Any]]:
        return self.update_onboarding(entity_id, organization_id, stage=new_stage)

    def set_progress(self, entity_id: str, organization_id: str, percent: int) -> Optional[dict[str, Any]]:
        return self.update_onboarding(entity_id, organization_id, progress=percent)

    def update_task(self, entity_id: str, organization_id: str, task_id: str, new_status: str) -> Optional[dict[str, Any]]:
        return self.update_onboarding(entity_id, organization_id, task={"id": task_id, "status": new_status})

    def update_onboarding(
        self,
        entity_id: str,
        organization_id: str,
        *,
        stage: Optional[str] = None,
        progress: Optional[int] = None,
        task: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        stage_v = _check_stage(stage) if stage is not None else None
        progress_v = _check_progress(progress) if progress is not None else None
        task_id = ""
        task_status = ""
        if task is not None:
            task_id = str(task.get("id") or "").strip()
            task_status = _check_task_status(task.get("status"))

        def _apply(doc: dict[str, Any], now: datetime) -> Optional[dict[str, Any]]:
            changed = False
            if stage_v is not None:
                doc["stage"] = stage_v
                changed = True
            if progress_v is not None:
                doc["progress"] = progress_v
                changed = True
            if task_id:
                tasks = list(doc.get("tasks") or [])
                idx = next((i for i, t in enumerate(tasks) if str((t or {}).get("id") or "") == task_id), -1)
                if idx >= 0:
                    updated = dict(tasks[idx])
                    updated["status"] = task_status
                    # completionDate is stamped on every completion and never cleared.
                    if task_status == "completed":
                        updated["completionDate"] = to_iso_utc(now)
                    tasks[idx] = updated
                    doc["tasks"] = tasks
                    changed = True
                else:
                    _log.info("task not found entity=%s task=%s", entity_id, task_id)
            return doc if changed else None

        out = self._entities.mutate_document(entity_id, organization_id, ONBOARDING_DOCUMENT, _apply)
        if out is not None:
            _log.info(
                "onboarding updated entity=%s stage=%s progress=%s task=%s",
                entity_id,
                stage_v or "-",
                "-" if progress_v is None else progress_v,
                task_id or "-",
            )
        return out
