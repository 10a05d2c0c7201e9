"""Alembic environment for the ledger schema.

The database URL comes from ``LEDGER_DATABASE_URL`` (via ``config``) rather
than ``alembic.ini``, and online migrations go through ``database.build_engine``
so SQLite connections get the same pragmas as the scheduler and workers.
"""
import logging
from logging.config import fileConfig

from alembic import context

from config import get_settings
from database import Base, build_engine
import models  # noqa: F401  registers the tables on Base.metadata


config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

database_url = get_settings().database_url
config.set_main_option("sqlalchemy.url", database_url)


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=Base.metadata,
        compare_type=True,
        render_as_batch=database_url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(url=database_url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = build_engine(database_url)
    try:
        with engine.connect() as connection:
            _configure(connection=connection)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()
    logger.info(f"migrations_applied: url={engine.url.render_as_string(hide_password=True)}")


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
