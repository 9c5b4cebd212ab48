from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from utils import StorageFailure


_log = logging.getLogger("db")

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def _sqlite_immediate_transactions(bound: Engine) -> None:
    # SQLite ignores FOR UPDATE; every transaction takes the write lock at BEGIN instead.
    @event.listens_for(bound, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(bound, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(database_url: str, *, pool_size: int = 5, echo: bool = False) -> Engine:
    url = str(database_url or "").strip()
    if not url:
        raise ValueError("Missing database url")
    if url.startswith("sqlite"):
        # Worker threads share the engine; wait on the file lock instead of failing fast.
        bound = create_engine(url, echo=echo, connect_args={"check_same_thread": False, "timeout": 30})
        _sqlite_immediate_transactions(bound)
        return bound
    return create_engine(url, echo=echo, pool_size=pool_size, pool_pre_ping=True, future=True)


def init_engine(database_url: str, *, pool_size: int = 5, echo: bool = False) -> Engine:
    global engine, SessionLocal
    engine = make_engine(database_url, pool_size=pool_size, echo=echo)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine


@dataclass
class RowSet:
    rows: list[Any] = field(default_factory=list)
    row_count: int = 0


class DocumentStore:
    """
    Transactional gateway over the relational store.

    `with_transaction(fn)` hands `fn` a transaction-scoped Session and commits when
    `fn` returns. Any exception rolls the transaction back; SQLAlchemy errors are
    re-raised as StorageFailure. The session is released on every path.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @classmethod
    def from_engine(cls, bind: Engine) -> "DocumentStore":
        return cls(sessionmaker(bind=bind, autoflush=False, expire_on_commit=False))

    def with_transaction(self, fn: Callable[[Session], T]) -> T:
        db = self._session_factory()
        try:
            out = fn(db)
            db.commit()
            return out
        except SQLAlchemyError as e:
            db.rollback()
            _log.exception("transaction failed")
            raise StorageFailure(f"Storage failure: {e.__class__.__name__}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def execute(self, query: Any, params: Optional[dict[str, Any]] = None) -> RowSet:
        stmt = text(query) if isinstance(query, str) else query

        def _run(db: Session) -> RowSet:
            res = db.execute(stmt, params or {})
            rows = list(res.all()) if res.returns_rows else []
            count = res.rowcount if res.rowcount is not None and res.rowcount >= 0 else len(rows)
            return RowSet(rows=rows, row_count=int(count))

        return self.with_transaction(_run)

    def ping(self) -> bool:
        try:
            self.execute("SELECT 1")
            return True
        except StorageFailure:
            return False


def get_document_store() -> DocumentStore:
    if SessionLocal is None:
        raise RuntimeError("DB not initialized")
    return DocumentStore(SessionLocal)


def create_engine_from_env() -> DocumentStore:
    """Load .env, configure logging, bind the global engine and create missing tables."""
    from dotenv import load_dotenv

    from config import Config, configure_logging

    load_dotenv()
    cfg = Config()
    cfg.validate()
    configure_logging(cfg.LOG_LEVEL)

    bound = init_engine(cfg.DATABASE_URL, pool_size=cfg.DB_POOL_SIZE, echo=cfg.DB_ECHO)
    import models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(bind=bound)
    _log.info("database ready env=%s", cfg.ENV)
    return get_document_store()
