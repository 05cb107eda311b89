"""Ingestion bookkeeping tables: per-kind checkpoints and skipped events."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Integer,
    PrimaryKeyConstraint,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import EventKind, sql_in_list

logger = logging.getLogger(__name__)


class IngestionCheckpoint(Base):
    """Highest block fully applied for one event kind."""

    __tablename__ = "ingestion_checkpoint"
    __table_args__ = (
        PrimaryKeyConstraint("event_kind", name="pk_ingestion_checkpoint"),
        CheckConstraint(
            f"event_kind IN ({sql_in_list(EventKind)})",
            name="ck_ingestion_checkpoint_kind",
        ),
        CheckConstraint("last_processed_block >= 0", name="ck_ingestion_checkpoint_block_nonneg"),
    )

    event_kind: Mapped[str] = mapped_column(Text, nullable=False)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class SkippedLedgerEvent(Base):
    """Malformed events skipped by ingestion, kept for manual replay."""

    __tablename__ = "skipped_ledger_event"
    __table_args__ = (
        PrimaryKeyConstraint("transaction_hash", "log_index", name="pk_skipped_ledger_event"),
    )

    transaction_hash: Mapped[str] = mapped_column(Text, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    event_kind: Mapped[str] = mapped_column(Text, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    skipped_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
