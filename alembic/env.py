"""Migration entry point for the archive schema.

The target database comes from ``services.database.resolve_database_url``:
an explicit URL handed over by ``run_migrations`` wins, otherwise the
archive settings decide (``ARCHIVE_DATABASE_URL`` or the YAML layers).
"""

from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from models import Base
from services.database import resolve_database_url

config = context.config

if config.config_file_name is not None and not config.attributes.get("keep_logging"):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

MIGRATION_OPTIONS = {"target_metadata": Base.metadata, "compare_type": True}


def _database_url() -> str:
    return resolve_database_url(config.attributes.get("database_url"))


def migrate_offline() -> None:
    """Emit the migration SQL without touching a database."""
    context.configure(
        url=_database_url(),
        literal_binds=True,
        render_as_batch=True,
        **MIGRATION_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def migrate_online() -> None:
    """Apply migrations over a short-lived connection.

    SQLite cannot alter columns in place, so its migrations run in batch mode.
    """
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                render_as_batch=connection.dialect.name == "sqlite",
                **MIGRATION_OPTIONS,
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    migrate_offline()
else:
    migrate_online()
