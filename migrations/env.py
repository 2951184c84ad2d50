"""
Alembic environment for the payments schema.

The database URL comes from the application settings (DATABASE_URL, .env
included) so migrations always run against the same database the service
uses. SQLite runs in batch mode because it cannot ALTER most constraints.
"""
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from fuep_payments.config import settings
from fuep_payments.db import Base, normalize_database_url
from fuep_payments import models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def database_url() -> str:
    return normalize_database_url(settings.DATABASE_URL or config.get_main_option("sqlalchemy.url"))


def configure_options(url: str) -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of executing it."""
    url = database_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **configure_options(url),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = database_url()
    engine = create_engine(url, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, **configure_options(url))
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
