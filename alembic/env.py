"""
env.py — Alembic Migration Environment for the Offering Engine

Loads DATABASE_URL from offering_engine config and targets the models'
metadata so autogenerate can detect schema changes.

Business Rules:
- One transaction per migration run
- The URL comes from Settings, never from alembic.ini

Called by: alembic CLI
Depends on: offering_engine.models (Base + all tables), offering_engine.config
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from offering_engine.config import Settings
from offering_engine.models import Base  # noqa: F401  registers every table on Base.metadata

config = context.config
config.set_main_option("sqlalchemy.url", Settings().database_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
