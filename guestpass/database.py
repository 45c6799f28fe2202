"""Engine and session management for the registration database.

Registrations own their capability tokens through an ``ON DELETE CASCADE``
foreign key. SQLite only honours that when ``PRAGMA foreign_keys`` is switched
on for every new DBAPI connection, so each engine built here registers a
connect hook that does it.
"""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import scoped_session, sessionmaker

from .config import settings


def enable_sqlite_foreign_keys(target: Engine) -> Engine:
    """Turn on FK enforcement for each connection ``target`` opens."""

    if target.dialect.name != "sqlite":
        return target

    @event.listens_for(target, "connect")
    def _set_foreign_keys(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    return target


def build_engine(url: str, **kwargs) -> Engine:
    """Create an engine for ``url`` with the guestpass connection defaults."""

    if make_url(url).get_backend_name() == "sqlite":
        # Sync routes run on a worker pool, so a connection may change threads.
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return enable_sqlite_foreign_keys(create_engine(url, future=True, **kwargs))


def foreign_keys_enabled(target: Engine) -> bool:
    if target.dialect.name != "sqlite":
        return True
    with target.connect() as connection:
        return bool(connection.exec_driver_sql("PRAGMA foreign_keys").scalar())


DATABASE_URL = settings.database_url
engine = build_engine(DATABASE_URL)
SessionLocal = scoped_session(
    sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )
)


@contextmanager
def get_session():
    """Yield a session that commits on success and rolls back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
