from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

log = logging.getLogger("supplylens.db")

_ENGINE: Optional[Engine] = None
_ENGINE_URL: Optional[str] = None

TENANT_CONTEXT_KEY = "tenant_id"


def reset_engine_cache() -> None:
    global _ENGINE, _ENGINE_URL
    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = None
    _ENGINE_URL = None


def _resolve_sqlite_path(path: str | None = None) -> str:
    # explicit arg wins
    if path and str(path).strip():
        return str(Path(path).expanduser())

    env_path = (os.getenv("SL_SQLITE_PATH") or "").strip()
    if env_path:
        return str(Path(env_path).expanduser())

    env = (os.getenv("SL_ENV") or "dev").strip().lower()
    if env == "test":
        return str(Path.cwd() / "sl-test.db")

    state_dir = Path(os.getenv("SL_STATE_DIR", "state"))
    state_dir.mkdir(parents=True, exist_ok=True)
    return str(state_dir / "supplylens.db")


def _db_url(sqlite_path: str | None = None) -> str:
    explicit = (os.getenv("SL_DB_URL") or "").strip()
    if explicit and not sqlite_path:
        return explicit
    p = _resolve_sqlite_path(sqlite_path)
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{p}"


def _sqlite_pragmas(dbapi_conn, _record) -> None:
    # pysqlite's implicit BEGIN is disabled; _sqlite_begin issues it instead.
    dbapi_conn.isolation_level = None
    cur = dbapi_conn.cursor()
    try:
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA foreign_keys=ON")
        cur.execute("PRAGMA busy_timeout=30000")
    finally:
        cur.close()


def _sqlite_begin(conn) -> None:
    # IMMEDIATE takes the write lock up front: concurrent writers queue on
    # busy_timeout instead of failing on a stale snapshot, and SAVEPOINT
    # always nests inside a real transaction.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine(sqlite_path: str | None = None) -> Engine:
    global _ENGINE, _ENGINE_URL
    url = _db_url(sqlite_path)
    if _ENGINE is not None and (sqlite_path is None or url == _ENGINE_URL):
        return _ENGINE

    if _ENGINE is not None:
        _ENGINE.dispose()

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        event.listen(engine, "connect", _sqlite_pragmas)
        event.listen(engine, "begin", _sqlite_begin)
    else:
        engine = create_engine(url, future=True, pool_pre_ping=True)

    _ENGINE = engine
    _ENGINE_URL = url
    return engine


def get_sessionmaker(sqlite_path: str | None = None) -> sessionmaker[Session]:
    engine = get_engine(sqlite_path)
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def _ensure_models_imported() -> None:
    import api.db_models  # noqa: F401


def init_db(*, sqlite_path: str | None = None) -> None:
    engine = get_engine(sqlite_path)
    _ensure_models_imported()
    from api.db_models import Base

    Base.metadata.create_all(bind=engine)
    log.debug("schema ensured url=%s", engine.url.render_as_string(hide_password=True))


def set_tenant_context(db: Session, tenant_id: str) -> None:
    """
    Pin the tenant on the session. Storage helpers read it back and refuse
    to run queries for any other tenant.
    """
    tid = str(tenant_id or "").strip()
    if not tid:
        raise ValueError("TENANT_CONTEXT_REQUIRED")
    db.info[TENANT_CONTEXT_KEY] = tid


def get_tenant_context(db: Session) -> Optional[str]:
    return db.info.get(TENANT_CONTEXT_KEY)
