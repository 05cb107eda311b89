"""Mirrored Vault event record definitions."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import WithdrawStatus, sql_in_list

logger = logging.getLogger(__name__)


class DepositRecord(Base):
    """One row per distinct Deposited emission; insert-only."""

    __tablename__ = "deposit_record"
    __table_args__ = (
        PrimaryKeyConstraint("transaction_hash", "log_index", name="pk_deposit_record"),
        CheckConstraint("user_address = lower(user_address)", name="ck_deposit_record_user_lower"),
        CheckConstraint("block_number >= 0", name="ck_deposit_record_block_nonneg"),
        CheckConstraint("log_index >= 0", name="ck_deposit_record_log_index_nonneg"),
        CheckConstraint("length(amount) > 0", name="ck_deposit_record_amount_not_blank"),
        Index("ix_deposit_record_user_block", "user_address", "block_number"),
    )

    transaction_hash: Mapped[str] = mapped_column(Text, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    user_address: Mapped[str] = mapped_column(Text, nullable=False)
    # Decimal string; wei amounts exceed float precision.
    amount: Mapped[str] = mapped_column(Text, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class WithdrawRequestRecord(Base):
    """Latest withdraw request per user, keyed by address."""

    __tablename__ = "withdraw_request"
    __table_args__ = (
        PrimaryKeyConstraint("user_address", name="pk_withdraw_request"),
        CheckConstraint("user_address = lower(user_address)", name="ck_withdraw_request_user_lower"),
        CheckConstraint(
            f"status IN ({sql_in_list(WithdrawStatus)})",
            name="ck_withdraw_request_status",
        ),
        CheckConstraint("unlock_time >= 0", name="ck_withdraw_request_unlock_nonneg"),
    )

    user_address: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[str] = mapped_column(Text, nullable=False)
    unlock_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(Text, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
