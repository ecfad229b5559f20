from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context

from alertwatch.core.settings import settings
from alertwatch.db.models import Base
from alertwatch.db.session import make_engine, normalize_url

# this is the Alembic Config object, which provides access to the values
# within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _url() -> str:
    # DATABASE_URL wins over the ini file
    return settings.DATABASE_URL or config.get_main_option("sqlalchemy.url") or "sqlite:///./local.db"


def run_migrations_offline() -> None:
    url, _ = normalize_url(_url())
    context.configure(url=url, target_metadata=target_metadata, literal_binds=True)

    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    connectable = make_engine(_url())
    async with connectable.connect() as connection:
        await connection.run_sync(_run_sync)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
