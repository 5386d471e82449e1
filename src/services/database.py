"""Database engine, session management and migrations."""

from __future__ import annotations

import logging
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import settings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]
T = TypeVar("T")

_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def resolve_database_url(url: str | None = None) -> str:
    """Return a sync-driver URL for ``url``, falling back to settings."""
    db_url = url or settings.database.url
    if db_url.startswith("postgresql+asyncpg://"):
        return db_url.replace("postgresql+asyncpg://", "postgresql://", 1)
    return db_url


def create_archive_engine(url: str | None = None) -> Engine:
    """Create an engine for the configured database URL."""
    db_url = resolve_database_url(url)
    kwargs: dict = {"pool_pre_ping": True}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(db_url, **kwargs)


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_archive_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine())
    return _session_factory


@contextmanager
def session_scope(session_factory: SessionFactory) -> Iterator[Session]:
    """Run work inside one managed transaction.

    Commits on normal exit, rolls back and re-raises on any exception.

    Usage:
        with session_scope(factory) as session:
            # use session
    """
    with closing(session_factory()) as session:
        session.expire_on_commit = False
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def run_in_session(
    session_factory: SessionFactory,
    session: Session | None,
    handler: Callable[[Session], T],
) -> T:
    """Run ``handler`` in the caller's session or in a new transaction.

    A supplied session joins the caller's atomic unit; the caller owns commit
    and rollback.
    """
    if session is not None:
        return handler(session)
    with session_scope(session_factory) as own_session:
        return handler(own_session)


def _alembic_config(url: str | None = None) -> Config:
    alembic_ini = Path(__file__).resolve().parents[2] / "alembic.ini"
    alembic_cfg = Config(str(alembic_ini))
    alembic_cfg.attributes["database_url"] = resolve_database_url(url)
    alembic_cfg.attributes["keep_logging"] = True
    return alembic_cfg


def run_migrations(url: str | None = None, revision: str = "head") -> None:
    """Upgrade the schema to ``revision``."""
    command.upgrade(_alembic_config(url), revision)
    logger.info("Database migrations applied (target=%s)", revision)


def check_connection(engine: Engine | None = None) -> bool:
    """Check if the database connection is working."""
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as exc:
        logger.error("Database connection check failed: %s", exc)
        return False
