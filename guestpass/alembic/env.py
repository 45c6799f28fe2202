"""Alembic environment for the guestpass schema.

Migrations normally run in-process from ``storage.upgrade_database``, which
passes the application engine's URL. When that URL matches, the live engine
is reused so in-memory and pooled databases see the same connection.
"""

from __future__ import annotations

from logging.config import fileConfig

from alembic import context

from guestpass import database
from guestpass.models import Base

config = context.config
target_metadata = Base.metadata

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _target_url() -> str:
    return config.get_main_option("sqlalchemy.url") or database.DATABASE_URL


def _migration_engine():
    url = _target_url()
    if url == database.engine.url.render_as_string(hide_password=False):
        return database.engine
    return database.build_engine(url)


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)


if context.is_offline_mode():
    _configure(url=_target_url(), literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()
else:
    with _migration_engine().connect() as connection:
        # SQLite cannot ALTER most constraints in place; batch mode copies tables.
        _configure(
            connection=connection,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()
