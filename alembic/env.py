# alembic/env.py
import os
from logging.config import fileConfig
from sqlalchemy import pool
from sqlalchemy import create_engine
from alembic import context

from docdash.config import settings as app_settings
from docdash.models import Base

# this is the Alembic Config object
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# uploads, outputs, user_stats, profiles
target_metadata = Base.metadata


def _get_db_url_from_settings_or_env():
    """
    DATABASE_URL from the environment wins over the value loaded into settings.
    """
    return os.environ.get("DATABASE_URL") or app_settings.database_url


def _to_sync_url(async_url: str) -> str:
    """
    Convert async driver scheme to sync driver for Alembic (asyncpg -> psycopg2).
    """
    return async_url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


db_url = _get_db_url_from_settings_or_env()

if not db_url:
    raise RuntimeError("No database URL found. Set env var DATABASE_URL.")

# Convert async DB URL to sync DB URL for alembic ops
sync_db_url = _to_sync_url(db_url)

# If alembic.ini has sqlalchemy.url, prefer it unless we have env override
if not config.get_main_option("sqlalchemy.url"):
    config.set_main_option("sqlalchemy.url", sync_db_url)


def run_migrations_offline():
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = create_engine(
        config.get_main_option("sqlalchemy.url"),
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
