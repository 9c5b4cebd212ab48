from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from models import Employee, User
from services.entity_store import EntityDefinition, EntityStore


_log = logging.getLogger("entities")

EMPLOYEE_STATUSES = frozenset({"active", "onboarding", "offboarding", "terminated", "on_leave"})
DEFAULT_EMPLOYEE_STATUS = "active"

EMPLOYEE_DOCUMENTS = {
    "personalInfo": dict,
    "contactInfo": dict,
    "demographics": dict,
    "employmentDetails": dict,
    "education": list,
    "workExperience": list,
    "skills": list,
    "documents": list,
    "onboarding": dict,
}


def serialize_employee(row: Employee) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "organizationId": str(row.organizationId or ""),
        "userId": row.userId or None,
        "status": str(row.status or DEFAULT_EMPLOYEE_STATUS),
        "personalInfo": row.personalInfo or {},
        "contactInfo": row.contactInfo or {},
        "demographics": row.demographics or {},
        "employmentDetails": row.employmentDetails or {},
        "education": row.education or [],
        "workExperience": row.workExperience or [],
        "skills": row.skills or [],
        "documents": row.documents or [],
        "onboarding": row.onboarding or {},
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def link_user_to_employee(db, row: Employee) -> None:
    """Record the new employee id in the owning user's metadata (same transaction, same organization)."""
    user = db.execute(
        select(User)
        .where(User.id == row.userId)
        .where(User.organizationId == row.organizationId)
        .with_for_update()
    ).scalar_one_or_none()
    if user is None:
        _log.warning("employee link skipped employee=%s user=%s reason=user_not_found", row.id, row.userId)
        return
    meta = dict(user.meta or {})
    meta["employee_id"] = row.id
    user.meta = meta
    user.updatedAt = row.createdAt
    db.flush()


EMPLOYEE = EntityDefinition(
    name="employee",
    model=Employee,
    documents=EMPLOYEE_DOCUMENTS,
    serialize=serialize_employee,
    statuses=EMPLOYEE_STATUSES,
    default_status=DEFAULT_EMPLOYEE_STATUS,
    owner_field="userId",
    filter_paths={"department": ("employmentDetails", "department")},
    search_paths=(
        ("personalInfo", "firstName"),
        ("personalInfo", "lastName"),
        ("contactInfo", "email"),
        ("employmentDetails", "position"),
    ),
    link_owner=link_user_to_employee,
)


class EmployeeStore(EntityStore):
    def __init__(self, store, *, entity: EntityDefinition = EMPLOYEE, **kwargs):
        super().__init__(store, entity, **kwargs)

    def get_employees_by_manager(self, organization_id: str, manager_id: str) -> list[dict[str, Any]]:
        return self.find_by_relation(organization_id, "employmentDetails", "manager", manager_id)
