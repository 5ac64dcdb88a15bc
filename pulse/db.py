from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pulse.config import get_settings
from pulse.models import Base

log = logging.getLogger(__name__)

MEMORY = ":memory:"

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None
_current_db_path: Path | None = None


def _enable_foreign_keys(dbapi_conn, _record) -> None:
    # SQLite ignores REFERENCES clauses unless asked per connection
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(db_path: str | Path) -> Engine:
    """SQLite engine for *db_path*; ``:memory:`` shares one connection across threads."""
    if str(db_path) == MEMORY:
        engine = create_engine(
            "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool,
        )
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _enable_foreign_keys)
    return engine


def init_db(db_path: str | Path | None = None) -> None:
    """(Re)bind the module session factory and create missing tables.

    Defaults to ``PULSE_DB_PATH``.
    """
    global _engine, _SessionLocal, _current_db_path
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = get_settings().db_path
        _engine = build_engine(db_path)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _current_db_path = Path(db_path)
    log.info("Database ready at %s", db_path)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Session that commits on success and rolls back on error.

    Used by the CLI; the API and MCP server open sessions per request::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_db_path() -> Path | None:
    return _current_db_path
