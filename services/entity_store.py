from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from db import DocumentStore
from utils import ValidationError, new_uuid, to_iso_utc, utc_now


_log = logging.getLogger("entities")

# Never client-settable.
MANAGED_FIELDS = frozenset({"id", "organizationId", "createdAt", "updatedAt"})


@dataclass(frozen=True)
class EntityDefinition:
    """
    Describes one tenant-scoped composite entity.

    `documents` maps each JSON sub-document attribute to the factory of its neutral
    value (dict or list). `filter_paths` maps list-filter names to a (document, key)
    path, `search_paths` lists the (document, key) text fields matched by `search`.
    `link_owner(db, row)` runs in the create transaction when the owner reference is set.
    """

    name: str
    model: type
    documents: Mapping[str, Callable[[], Any]]
    serialize: Callable[[Any], dict[str, Any]]
    statuses: frozenset[str]
    default_status: str
    owner_field: str = "userId"
    filter_paths: Mapping[str, tuple[str, str]] = field(default_factory=dict)
    search_paths: tuple[tuple[str, str], ...] = ()
    link_owner: Optional[Callable[[Session, Any], None]] = None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class EntityStore:
    def __init__(self, store: DocumentStore, entity: EntityDefinition, *, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self.entity = entity
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def _scope(self, entity_id: str, organization_id: str) -> list[Any]:
        m = self.entity.model
        return [m.id == str(entity_id or ""), m.organizationId == str(organization_id or "")]

    def _neutral(self, name: str) -> Any:
        return self.entity.documents[name]()

    def _check_status(self, status: Any) -> str:
        s = str(status or "").strip()
        if s not in self.entity.statuses:
            raise ValidationError(f"Invalid {self.entity.name} status: {status!r}")
        return s

    def _assignments(self, fields: Mapping[str, Any]) -> list[tuple[str, Any]]:
        """Ordered (column, value) pairs for the keys present in `fields`."""
        pairs: list[tuple[str, Any]] = []
        for key, value in fields.items():
            if key == "status":
                pairs.append(("status", self._check_status(value)))
            elif key in self.entity.documents:
                pairs.append((key, copy.deepcopy(value) if value is not None else self._neutral(key)))
            elif key in MANAGED_FIELDS:
                _log.debug("ignoring managed field entity=%s field=%s", self.entity.name, key)
            else:
                _log.debug("ignoring unknown field entity=%s field=%s", self.entity.name, key)
        return pairs

    def create(self, organization_id: str, initial_fields: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        org = str(organization_id or "").strip()
        if not org:
            raise ValidationError("Missing organizationId")

        ent = self.entity
        fields = dict(initial_fields or {})
        status = self._check_status(fields.get("status") or ent.default_status)
        owner_ref = str(fields.get(ent.owner_field) or "").strip() or None
        docs = {
            name: copy.deepcopy(fields[name]) if fields.get(name) is not None else self._neutral(name)
            for name in ent.documents
        }
        now_iso = to_iso_utc(self._clock())

        def _tx(db):
            row = ent.model(
                id=new_uuid(),
                organizationId=org,
                status=status,
                createdAt=now_iso,
                updatedAt=now_iso,
                **{ent.owner_field: owner_ref},
                **docs,
            )
            db.add(row)
            db.flush()
            if owner_ref and ent.link_owner is not None:
                ent.link_owner(db, row)
            return ent.serialize(row)

        out = self._store.with_transaction(_tx)
        _log.info("created entity=%s id=%s org=%s", ent.name, out["id"], org)
        return out

    def get_by_id(self, entity_id: str, organization_id: str) -> Optional[dict[str, Any]]:
        m = self.entity.model

        def _tx(db):
            row = db.execute(select(m).where(*self._scope(entity_id, organization_id))).scalar_one_or_none()
            return self.entity.serialize(row) if row is not None else None

        return self._store.with_transaction(_tx)

    def patch(self, entity_id: str, organization_id: str, partial_fields: Optional[Mapping[str, Any]]) -> Optional[dict[str, Any]]:
        """
        Presence-based update: every key present replaces the stored value, absent keys
        are untouched. Returns None (and writes nothing) when the entity is not in the
        organization. An empty patch returns the current entity without a write.
        """

        ent = self.entity
        m = ent.model
        pairs = self._assignments(dict(partial_fields or {}))
        scope = self._scope(entity_id, organization_id)

        def _tx(db):
            current = db.execute(select(m.id, m.updatedAt).where(*scope).with_for_update()).first()
            if current is None:
                return None
            if pairs:
                values = dict(pairs)
                values["updatedAt"] = max(to_iso_utc(self._clock()), str(current.updatedAt or ""))
                db.execute(update(m).where(*scope).values(values).execution_options(synchronize_session=False))
            row = db.execute(select(m).where(*scope).execution_options(populate_existing=True)).scalar_one()
            return ent.serialize(row)

        out = self._store.with_transaction(_tx)
        if out is None:
            _log.info("patch skipped entity=%s id=%s org=%s reason=not_found", ent.name, entity_id, organization_id)
        elif pairs:
            _log.info("patched entity=%s id=%s fields=%s", ent.name, entity_id, ",".join(k for k, _ in pairs))
        return out

    def mutate_document(
        self,
        entity_id: str,
        organization_id: str,
        document: str,
        fn: Callable[[Any, datetime], Any],
    ) -> Optional[dict[str, Any]]:
        """
        Read-modify-write of one sub-document under a row lock.

        `fn(current, now)` receives a private copy of the stored document and returns
        the replacement, or None to leave the entity untouched.
        """

        ent = self.entity
        if document not in ent.documents:
            raise ValidationError(f"Unknown {ent.name} document: {document}")
        m = ent.model
        scope = self._scope(entity_id, organization_id)

        def _tx(db):
            row = db.execute(select(m).where(*scope).with_for_update()).scalar_one_or_none()
            if row is None:
                return None
            now = self._clock()
            current = copy.deepcopy(getattr(row, document)) or self._neutral(document)
            replacement = fn(current, now)
            if replacement is not None:
                setattr(row, document, replacement)
                row.updatedAt = max(to_iso_utc(now), str(row.updatedAt or ""))
                db.flush()
            return ent.serialize(row)

        return self._store.with_transaction(_tx)

    def delete(self, entity_id: str, organization_id: str) -> bool:
        m = self.entity.model

        def _tx(db):
            res = db.execute(delete(m).where(*self._scope(entity_id, organization_id)))
            return int(res.rowcount or 0) > 0

        removed = self._store.with_transaction(_tx)
        if removed:
            _log.info("deleted entity=%s id=%s org=%s", self.entity.name, entity_id, organization_id)
        return removed

    def _json_text(self, document: str, key: str):
        return getattr(self.entity.model, document)[key].as_string()

    def list(
        self,
        organization_id: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        if int(limit) < 0 or int(offset) < 0:
            raise ValidationError("limit and offset must be >= 0")

        ent = self.entity
        m = ent.model
        f = dict(filters or {})
        conds: list[Any] = [m.organizationId == str(organization_id or "")]

        status = str(f.get("status") or "").strip()
        if status:
            conds.append(m.status == status)
        for name, (document, key) in ent.filter_paths.items():
            val = f.get(name)
            if val is not None and str(val) != "":
                conds.append(self._json_text(document, key) == str(val))
        search = str(f.get("search") or "").strip()
        if search and ent.search_paths:
            pattern = f"%{_escape_like(search)}%"
            conds.append(or_(*[self._json_text(d, k).ilike(pattern, escape="\\") for d, k in ent.search_paths]))

        def _tx(db):
            total = db.execute(select(func.count()).select_from(m).where(*conds)).scalar_one()
            rows = (
                db.execute(select(m).where(*conds).order_by(m.createdAt.desc(), m.id.desc()).limit(int(limit)).offset(int(offset)))
                .scalars()
                .all()
            )
            return [ent.serialize(r) for r in rows], int(total or 0)

        return self._store.with_transaction(_tx)

    def find_by_relation(self, organization_id: str, document: str, key: str, value: Any) -> list[dict[str, Any]]:
        """Entities whose `document[key]` equals `value` (e.g. employmentDetails.manager)."""
        ent = self.entity
        if document not in ent.documents or not isinstance(self._neutral(document), dict):
            raise ValidationError(f"Not an object document: {document}")
        m = ent.model

        def _tx(db):
            q = (
                select(m)
                .where(m.organizationId == str(organization_id or ""))
                .where(self._json_text(document, key) == str(value))
                .order_by(m.createdAt.desc(), m.id.desc())
            )
            return [ent.serialize(r) for r in db.execute(q).scalars().all()]

        return self._store.with_transaction(_tx)
