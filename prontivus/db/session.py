"""Engine and session factory for the application database."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Iterator, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_database_settings
from .models import Base

LOGGER = structlog.get_logger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def _create_engine() -> Engine:
    settings = get_database_settings()
    options = settings.engine_options()
    if settings.is_postgres:
        options["pool_pre_ping"] = True
    engine = sa.create_engine(settings.url, future=True, **options)

    if settings.is_sqlite:

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):  # type: ignore[override]
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA foreign_keys=ON")
            finally:
                cursor.close()

    LOGGER.info("database_engine_created", dialect=engine.dialect.name)
    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _create_engine()
    return _engine


def configure_session_factory(factory: Optional[sessionmaker] = None) -> sessionmaker:
    """Install ``factory`` (or one bound to the default engine) as the active factory."""

    global _session_factory
    if factory is None:
        factory = sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False, future=True)
    _session_factory = factory
    return factory


def _factory() -> sessionmaker:
    return _session_factory or configure_session_factory()


def init_schema(engine: Optional[Engine] = None) -> None:
    """Create all tables on ``engine``; alembic owns schema changes in production."""

    Base.metadata.create_all(bind=engine or get_engine())


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session committed when the request succeeds."""

    session: Session = _factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Context manager yielding a session outside the request cycle."""

    session: Session = _factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
