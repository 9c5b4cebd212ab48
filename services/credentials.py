from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Optional

from sqlalchemy import case, delete, func, or_, select, update

from db import DocumentStore
from models import ApiKey, MagicLink, RefreshToken, SetupCode
from tokens import formatted_setup_code, generate_api_key, hash_secret, random_hex
from utils import ConflictError, ValidationError, new_uuid, parse_datetime_maybe, to_iso_utc, utc_now


_log = logging.getLogger("credentials")

SETUP_CODE = "setup_code"
MAGIC_LINK = "magic_link"
REFRESH_TOKEN = "refresh_token"
API_KEY = "api_key"

NOT_FOUND = "NOT_FOUND"
EXPIRED = "EXPIRED"
ALREADY_USED = "ALREADY_USED"

_MESSAGES = {
    NOT_FOUND: "Credential not found",
    EXPIRED: "Credential has expired",
    ALREADY_USED: "Credential has already been used",
}


@dataclass(frozen=True)
class CredentialPolicy:
    """
    Kind-specific behaviour of the credential engine.

    consume_on_redeem=False makes the kind revocation-only: redeem re-validates and
    records usage, and only `revoke` flips `used`.
    """

    kind: str
    model: type
    generate: Callable[[], str]
    default_ttl: Optional[timedelta] = None
    consume_on_redeem: bool = True
    retain_secret: bool = True
    purge_used_on_cleanup: bool = False
    prefix_length: int = 10


@dataclass
class IssuedCredential:
    id: str
    kind: str
    ownerId: str
    secret: str
    secretPrefix: str
    label: str
    expiresAt: str
    used: bool
    usedAt: str
    createdBy: str
    metadata: dict[str, Any] = field(default_factory=dict)
    lastUsedAt: str = ""
    usageCount: int = 0
    createdAt: str = ""
    updatedAt: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "ownerId": self.ownerId,
            "secret": self.secret,
            "secretPrefix": self.secretPrefix,
            "label": self.label,
            "expiresAt": self.expiresAt,
            "used": self.used,
            "usedAt": self.usedAt,
            "createdBy": self.createdBy,
            "metadata": dict(self.metadata or {}),
            "lastUsedAt": self.lastUsedAt,
            "usageCount": self.usageCount,
            "createdAt": self.createdAt,
            "updatedAt": self.updatedAt,
        }


@dataclass
class CredentialCheck:
    valid: bool
    credential: Optional[IssuedCredential] = None
    reason: str = ""
    message: str = ""


def _fail(reason: str, credential: Optional[IssuedCredential] = None) -> CredentialCheck:
    return CredentialCheck(valid=False, credential=credential, reason=reason, message=_MESSAGES.get(reason, ""))


def _to_credential(row: Any, kind: str, *, secret: Optional[str] = None) -> IssuedCredential:
    return IssuedCredential(
        id=str(row.id),
        kind=kind,
        ownerId=str(row.ownerId or ""),
        secret=str(secret if secret is not None else (row.secretValue or "")),
        secretPrefix=str(row.secretPrefix or ""),
        label=str(row.label or ""),
        expiresAt=str(row.expiresAt or ""),
        used=bool(row.used),
        usedAt=str(row.usedAt or ""),
        createdBy=str(row.createdBy or ""),
        metadata=dict(row.meta or {}),
        lastUsedAt=str(row.lastUsedAt or ""),
        usageCount=int(row.usageCount or 0),
        createdAt=str(row.createdAt or ""),
        updatedAt=str(row.updatedAt or ""),
    )


class CredentialEngine:
    def __init__(self, store: DocumentStore, policy: CredentialPolicy, *, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self.policy = policy
        self._clock = clock

    @property
    def kind(self) -> str:
        return self.policy.kind

    def issue(
        self,
        owner_id: str,
        ttl: Optional[timedelta] = None,
        metadata: Optional[dict[str, Any]] = None,
        *,
        created_by: str = "",
        label: str = "",
    ) -> IssuedCredential:
        """
        Persist a fresh unused credential and return it with its plaintext secret.

        `ttl=None` falls back to the policy default; a policy default of None means the
        credential never expires. A negative ttl yields an already-expired record.
        """

        owner = str(owner_id or "").strip()
        if not owner:
            raise ValidationError("Missing owner id")
        if ttl is not None and not isinstance(ttl, timedelta):
            raise ValidationError("ttl must be a timedelta")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")

        p = self.policy
        now = self._clock()
        effective_ttl = ttl if ttl is not None else p.default_ttl
        expires_at = to_iso_utc(now + effective_ttl) if effective_ttl is not None else ""
        now_iso = to_iso_utc(now)
        secret = p.generate()

        def _tx(db):
            row = p.model(
                id=new_uuid(),
                ownerId=owner,
                secretHash=hash_secret(secret),
                secretPrefix=secret[: p.prefix_length],
                secretValue=secret if p.retain_secret else "",
                label=str(label or ""),
                expiresAt=expires_at,
                used=False,
                usedAt="",
                createdBy=str(created_by or ""),
                meta=dict(metadata or {}),
                lastUsedAt="",
                usageCount=0,
                createdAt=now_iso,
                updatedAt=now_iso,
            )
            db.add(row)
            db.flush()
            return _to_credential(row, p.kind, secret=secret)

        cred = self._store.with_transaction(_tx)
        _log.info(
            "issued kind=%s id=%s owner=%s prefix=%s expiresAt=%s",
            p.kind,
            cred.id,
            owner,
            cred.secretPrefix,
            cred.expiresAt or "never",
        )
        return cred

    def _check(self, row: Any, now: datetime) -> CredentialCheck:
        if row is None:
            return _fail(NOT_FOUND)
        cred = _to_credential(row, self.policy.kind)
        exp = parse_datetime_maybe(row.expiresAt)
        if exp is not None and now > exp:
            return _fail(EXPIRED, cred)
        if bool(row.used):
            return _fail(ALREADY_USED, cred)
        return CredentialCheck(valid=True, credential=cred)

    def validate(self, secret: str) -> CredentialCheck:
        """Check a presented secret without consuming it."""
        s = str(secret or "").strip()
        if not s:
            return _fail(NOT_FOUND)
        model = self.policy.model
        h = hash_secret(s)

        def _tx(db):
            row = db.execute(select(model).where(model.secretHash == h)).scalar_one_or_none()
            return self._check(row, self._clock())

        return self._store.with_transaction(_tx)

    def redeem(self, secret: str) -> CredentialCheck:
        """
        Validate and consume in one transaction.

        The row is locked, re-checked against committed state and flipped with a
        conditional UPDATE (`used = false` in the WHERE clause). When a concurrent
        redemption already won, no row matches and the outcome is ALREADY_USED.
        Returns the pre-redemption record on success.
        """

        s = str(secret or "").strip()
        if not s:
            return _fail(NOT_FOUND)
        p = self.policy
        model = p.model
        h = hash_secret(s)

        def _tx(db):
            now = self._clock()
            row = db.execute(select(model).where(model.secretHash == h).with_for_update()).scalar_one_or_none()
            check = self._check(row, now)
            if not check.valid:
                return check

            now_iso = to_iso_utc(now)
            if p.consume_on_redeem:
                res = db.execute(
                    update(model)
                    .where(model.id == row.id)
                    .where(model.used.is_(False))
                    .values(used=True, usedAt=now_iso, lastUsedAt=now_iso, usageCount=model.usageCount + 1, updatedAt=now_iso)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    return _fail(ALREADY_USED, check.credential)
            else:
                db.execute(
                    update(model)
                    .where(model.id == row.id)
                    .values(lastUsedAt=now_iso, usageCount=model.usageCount + 1)
                    .execution_options(synchronize_session=False)
                )
            return check

        out = self._store.with_transaction(_tx)
        if out.valid:
            _log.info("redeemed kind=%s id=%s consumed=%s", p.kind, out.credential.id, p.consume_on_redeem)
        else:
            _log.warning("redeem rejected kind=%s reason=%s", p.kind, out.reason)
        return out

    def _by_id(self, credential_id: str, owner_id: Optional[str]):
        model = self.policy.model
        q = select(model).where(model.id == str(credential_id or "").strip())
        if owner_id is not None:
            q = q.where(model.ownerId == str(owner_id or "").strip())
        return q

    def revoke(self, credential_id: str, owner_id: Optional[str] = None) -> bool:
        """
        Force `used=true` regardless of validity. Idempotent; False when the id is unknown
        or, with `owner_id`, belongs to another owner.
        """
        cid = str(credential_id or "").strip()
        if not cid:
            return False

        def _tx(db):
            row = db.execute(self._by_id(cid, owner_id).with_for_update()).scalar_one_or_none()
            if row is None:
                return False
            if not row.used:
                now_iso = to_iso_utc(self._clock())
                row.used = True
                row.usedAt = now_iso
                row.updatedAt = now_iso
            return True

        found = self._store.with_transaction(_tx)
        if found:
            _log.info("revoked kind=%s id=%s", self.policy.kind, cid)
        return found

    def revoke_all(self, owner_id: str) -> int:
        owner = str(owner_id or "").strip()
        if not owner:
            return 0
        model = self.policy.model
        now_iso = to_iso_utc(self._clock())

        def _tx(db):
            res = db.execute(
                update(model)
                .where(model.ownerId == owner)
                .where(model.used.is_(False))
                .values(used=True, usedAt=now_iso, updatedAt=now_iso)
                .execution_options(synchronize_session=False)
            )
            return int(res.rowcount or 0)

        count = self._store.with_transaction(_tx)
        _log.info("revoked all kind=%s owner=%s count=%s", self.policy.kind, owner, count)
        return count

    def list_active(self, owner_id: str, include_used: bool = False) -> list[IssuedCredential]:
        owner = str(owner_id or "").strip()
        model = self.policy.model

        def _tx(db):
            q = select(model).where(model.ownerId == owner)
            if not include_used:
                q = q.where(model.used.is_(False))
            q = q.order_by(model.createdAt.desc(), model.id.desc())
            return [_to_credential(r, self.policy.kind) for r in db.execute(q).scalars().all()]

        return self._store.with_transaction(_tx)

    def get_by_id(self, credential_id: str) -> Optional[IssuedCredential]:
        model = self.policy.model

        def _tx(db):
            row = db.execute(select(model).where(model.id == str(credential_id or ""))).scalar_one_or_none()
            return _to_credential(row, self.policy.kind) if row is not None else None

        return self._store.with_transaction(_tx)

    def delete(self, credential_id: str, owner_id: Optional[str] = None) -> bool:
        model = self.policy.model
        conds = [model.id == str(credential_id or "").strip()]
        if owner_id is not None:
            conds.append(model.ownerId == str(owner_id or "").strip())

        def _tx(db):
            res = db.execute(delete(model).where(*conds))
            return int(res.rowcount or 0) > 0

        removed = self._store.with_transaction(_tx)
        if removed:
            _log.info("deleted kind=%s id=%s", self.policy.kind, credential_id)
        return removed

    def update(
        self,
        credential_id: str,
        owner_id: str,
        *,
        label: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[IssuedCredential]:
        """
        Change the label and/or metadata of an owner's credential.

        Returns None when the credential does not exist for that owner. A label already
        carried by another credential of the same owner and kind raises ConflictError.
        """

        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")
        owner = str(owner_id or "").strip()
        new_label = str(label).strip() if label is not None else None
        model = self.policy.model

        def _tx(db):
            row = db.execute(self._by_id(credential_id, owner).with_for_update()).scalar_one_or_none()
            if row is None:
                return None
            if new_label and new_label != row.label:
                dup = db.execute(
                    select(model.id)
                    .where(model.ownerId == owner)
                    .where(model.label == new_label)
                    .where(model.id != row.id)
                ).first()
                if dup is not None:
                    raise ConflictError("Credential label already exists for this owner")
            if new_label is None and metadata is None:
                return _to_credential(row, self.policy.kind)
            if new_label is not None:
                row.label = new_label
            if metadata is not None:
                row.meta = dict(metadata)
            row.updatedAt = max(to_iso_utc(self._clock()), str(row.updatedAt or ""))
            db.flush()
            return _to_credential(row, self.policy.kind)

        out = self._store.with_transaction(_tx)
        if out is not None:
            _log.info("updated kind=%s id=%s prefix=%s", self.policy.kind, out.id, out.secretPrefix)
        return out

    def stats(self, owner_id: str) -> dict[str, int]:
        """Counts for one owner: total, active (unused and unexpired), expired, and summed usage."""
        owner = str(owner_id or "").strip()
        model = self.policy.model
        now_iso = to_iso_utc(self._clock())
        expired = (model.expiresAt != "") & (model.expiresAt < now_iso)
        unexpired = or_(model.expiresAt == "", model.expiresAt >= now_iso)

        def _tx(db):
            row = db.execute(
                select(
                    func.count(),
                    func.sum(case((model.used.is_(False) & unexpired, 1), else_=0)),
                    func.sum(case((expired, 1), else_=0)),
                    func.sum(model.usageCount),
                ).where(model.ownerId == owner)
            ).one()
            return {
                "total": int(row[0] or 0),
                "active": int(row[1] or 0),
                "expired": int(row[2] or 0),
                "totalUsage": int(row[3] or 0),
            }

        return self._store.with_transaction(_tx)

    def cleanup_expired(self) -> int:
        p = self.policy
        model = p.model
        now_iso = to_iso_utc(self._clock())

        def _tx(db):
            expired = (model.expiresAt != "") & (model.expiresAt < now_iso)
            cond = or_(expired, model.used.is_(True)) if p.purge_used_on_cleanup else expired
            res = db.execute(delete(model).where(cond))
            return int(res.rowcount or 0)

        count = self._store.with_transaction(_tx)
        if count:
            _log.info("cleanup kind=%s removed=%s", p.kind, count)
        return count


def build_policies(cfg: Any) -> dict[str, CredentialPolicy]:
    api_key_days = int(getattr(cfg, "API_KEY_TTL_DAYS", 0) or 0)
    return {
        SETUP_CODE: CredentialPolicy(
            kind=SETUP_CODE,
            model=SetupCode,
            generate=partial(formatted_setup_code, getattr(cfg, "SETUP_CODE_PREFIX", "CLAVE")),
            default_ttl=timedelta(hours=int(cfg.SETUP_CODE_TTL_HOURS)),
            consume_on_redeem=True,
            retain_secret=True,
        ),
        MAGIC_LINK: CredentialPolicy(
            kind=MAGIC_LINK,
            model=MagicLink,
            generate=partial(random_hex, 48),
            default_ttl=timedelta(minutes=int(cfg.MAGIC_LINK_TTL_MINUTES)),
            consume_on_redeem=True,
            retain_secret=True,
            purge_used_on_cleanup=True,
        ),
        REFRESH_TOKEN: CredentialPolicy(
            kind=REFRESH_TOKEN,
            model=RefreshToken,
            generate=partial(random_hex, 64),
            default_ttl=timedelta(days=int(cfg.REFRESH_TOKEN_TTL_DAYS)),
            consume_on_redeem=False,
            retain_secret=False,
            purge_used_on_cleanup=True,
        ),
        API_KEY: CredentialPolicy(
            kind=API_KEY,
            model=ApiKey,
            generate=generate_api_key,
            default_ttl=timedelta(days=api_key_days) if api_key_days > 0 else None,
            consume_on_redeem=False,
            retain_secret=False,
        ),
    }


class CredentialRegistry:
    def __init__(self, store: DocumentStore, cfg: Any, *, clock: Callable[[], datetime] = utc_now):
        self._engines = {kind: CredentialEngine(store, policy, clock=clock) for kind, policy in build_policies(cfg).items()}

    def get(self, kind: str) -> CredentialEngine:
        engine = self._engines.get(str(kind or "").strip().lower())
        if engine is None:
            raise ValidationError(f"Unknown credential kind: {kind}")
        return engine

    @property
    def setup_codes(self) -> CredentialEngine:
        return self._engines[SETUP_CODE]

    @property
    def magic_links(self) -> CredentialEngine:
        return self._engines[MAGIC_LINK]

    @property
    def refresh_tokens(self) -> CredentialEngine:
        return self._engines[REFRESH_TOKEN]

    @property
    def api_keys(self) -> CredentialEngine:
        return self._engines[API_KEY]

    def kinds(self) -> list[str]:
        return list(self._engines.keys())

    def cleanup_all(self) -> dict[str, int]:
        return {kind: engine.cleanup_expired() for kind, engine in self._engines.items()}
