"""Alembic environment for the parley schema.

Migrations run against the same database URL the application resolves from
its settings, in offline (SQL script) or online (live connection) mode.
"""

from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from parley.core.config import settings
from parley.db.base import Base


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url() -> str:
    return settings.sqlalchemy_database_uri


def is_sqlite() -> bool:
    # SQLite has limited ALTER TABLE support; batch mode rebuilds tables instead.
    return get_url().startswith("sqlite")


def include_object(
    _object: object,
    name: str | None,
    _type: str,
    _reflected: bool,
    _compare_to: object,
) -> bool:
    if name and name.startswith("_alembic_tmp"):
        return False
    return not (name and name.startswith("alembic_"))


def run_migrations_offline() -> None:
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = get_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            include_object=include_object,
            render_as_batch=is_sqlite(),
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
