"""Database protocol and SQLAlchemy-backed adapter for mirror stores."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from backend.db import models  # noqa: F401  # Ensure all mapped classes are registered.
from backend.db.base import Base

logger = logging.getLogger(__name__)

_IN_MEMORY_SQLITE_URLS = frozenset({"sqlite://", "sqlite:///:memory:"})


class LedgerDatabase(Protocol):
    """Minimal DB protocol used by mirror stores (``:named`` parameters)."""

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        """Fetch one row."""

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        """Fetch rows (also used for INSERT ... RETURNING)."""

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        """Execute mutation statement."""

    def commit(self) -> None:
        """Commit the open transaction."""

    def rollback(self) -> None:
        """Roll back the open transaction."""

    def close(self) -> None:
        """Release the underlying connection."""


class SqlAlchemyLedgerDB:
    """Adapter implementing LedgerDatabase on a SQLAlchemy connection."""

    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        result = self.conn.execute(text(sql), dict(params))
        return [dict(row) for row in result.mappings().all()]

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        self.conn.execute(text(sql), dict(params))

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def close(self) -> None:
        self.conn.close()


def is_in_memory_url(url: str) -> bool:
    return url in _IN_MEMORY_SQLITE_URLS


def create_db_engine(url: str) -> Engine:
    """Build an engine; PostgreSQL URLs should use the ``postgresql+psycopg`` driver.

    In-memory SQLite shares one DBAPI connection across all callers.
    """
    if url.startswith("sqlite"):
        if is_in_memory_url(url):
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)


def create_schema(engine: Engine) -> None:
    """Create all mirror tables that do not exist yet."""
    logger.info("Creating mirror schema on %s", engine.url.render_as_string(hide_password=True))
    Base.metadata.create_all(engine)


def connection_factory(engine: Engine) -> Callable[[], SqlAlchemyLedgerDB]:
    """Return a callable opening one adapter (and connection) per caller."""

    def _connect() -> SqlAlchemyLedgerDB:
        return SqlAlchemyLedgerDB(engine.connect())

    return _connect
