"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Iterator

import pytest
from sqlalchemy.engine import Engine

from ledger_mirror.db_adapter import SqlAlchemyLedgerDB, connection_factory, create_db_engine, create_schema


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    """File-backed SQLite URL; safe for multi-threaded engine tests."""
    return f"sqlite:///{tmp_path / 'mirror.db'}"


@pytest.fixture
def db_engine(sqlite_url: str) -> Iterator[Engine]:
    engine = create_db_engine(sqlite_url)
    create_schema(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def ledger_db(db_engine: Engine) -> Iterator[SqlAlchemyLedgerDB]:
    """Mirror DB adapter on its own connection."""
    db = connection_factory(db_engine)()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="session")
def pg_engine() -> Any:
    """Session-scoped PostgreSQL engine (psycopg driver) for integration tests."""
    host = os.getenv("TEST_DB_HOST")
    port = os.getenv("TEST_DB_PORT")
    dbname = os.getenv("TEST_DB_NAME")
    user = os.getenv("TEST_DB_USER")
    password = os.getenv("TEST_DB_PASSWORD")

    if not all([host, port, dbname, user, password]):
        pytest.skip("Integration DB env vars are missing")

    engine = create_db_engine(f"postgresql+psycopg://{user}:{password}@{host}:{port}/{dbname}")
    try:
        yield engine
    finally:
        engine.dispose()
