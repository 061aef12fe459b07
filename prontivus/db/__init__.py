"""Database helpers for Prontivus."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import Base
from .session import (
    configure_session_factory,
    get_engine,
    get_session,
    init_schema,
    session_scope,
)

__all__ = [
    "Base",
    "DatabaseSettings",
    "get_database_settings",
    "configure_session_factory",
    "get_engine",
    "get_session",
    "init_schema",
    "session_scope",
]
