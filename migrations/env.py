import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from insurance_billing.src.core.config.settings import get_settings
from insurance_billing.src.core.database.db_session import Base
import insurance_billing.src.core.database.models  # noqa: F401  registers all tables on Base.metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    return get_settings().DATABASE_URL


def _make_sync_url(url: str) -> str:
    """Alembic runs synchronously; swap the async drivers for their sync counterparts."""
    return (
        url.replace("sqlite+aiosqlite://", "sqlite://")
           .replace("postgresql+asyncpg://", "postgresql+psycopg2://")
    )


def run_migrations_offline() -> None:
    context.configure(
        url=_make_sync_url(get_url()),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = _make_sync_url(get_url())

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
            render_as_batch=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
