"""Alembic environment for the retention engine schema.

The database URL comes from RETENTION_ENGINE_DATABASE__URL, falling back
to DATABASE_URL and then ``sqlalchemy.url`` in alembic.ini.
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from retention_engine.db import async_database_url
from retention_engine.db.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

COMPARE = {"compare_type": True, "compare_server_default": True}


def migration_url() -> str:
    for name in ("RETENTION_ENGINE_DATABASE__URL", "DATABASE_URL"):
        if os.environ.get(name):
            return async_database_url(os.environ[name])
    return async_database_url(config.get_main_option("sqlalchemy.url", ""))


def run_offline() -> None:
    """Emit SQL for the job and evidence tables without connecting."""
    context.configure(
        url=migration_url(),
        target_metadata=Base.metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **COMPARE,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_engine(migration_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=Base.metadata, **COMPARE)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
