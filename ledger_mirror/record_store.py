"""Idempotent write store for mirrored Vault records."""

from __future__ import annotations

from dataclasses import dataclass
import enum
import logging
from typing import Any, Mapping, Optional, Sequence

from backend.db.enums import WithdrawStatus
from ledger_mirror.db_adapter import LedgerDatabase
from ledger_mirror.event_contract import LedgerEvent

logger = logging.getLogger(__name__)


class InsertOutcome(str, enum.Enum):
    """Result of an idempotent insert attempt."""

    INSERTED = "INSERTED"
    ALREADY_EXISTS = "ALREADY_EXISTS"


@dataclass(frozen=True)
class DepositRow:
    user_address: str
    amount: str
    transaction_hash: str
    block_number: int
    block_timestamp: int
    log_index: int


@dataclass(frozen=True)
class WithdrawRequestRow:
    user_address: str
    amount: str
    unlock_time: int
    status: WithdrawStatus
    transaction_hash: str
    block_number: int
    log_index: int


def _deposit_from_row(row: Mapping[str, Any]) -> DepositRow:
    return DepositRow(
        user_address=str(row["user_address"]),
        amount=str(row["amount"]),
        transaction_hash=str(row["transaction_hash"]),
        block_number=int(row["block_number"]),
        block_timestamp=int(row["block_timestamp"]),
        log_index=int(row["log_index"]),
    )


class RecordStore:
    """Deposit history (insert-only) and latest withdraw request per user."""

    def __init__(self, db: LedgerDatabase) -> None:
        self._db = db

    def insert_deposit(self, record: DepositRow) -> InsertOutcome:
        """Insert once per (transaction_hash, log_index); duplicates are an outcome, not an error."""
        rows = self._db.fetch_all(
            """
            INSERT INTO deposit_record (
                transaction_hash, log_index, user_address, amount,
                block_number, block_timestamp
            ) VALUES (
                :transaction_hash, :log_index, :user_address, :amount,
                :block_number, :block_timestamp
            )
            ON CONFLICT (transaction_hash, log_index) DO NOTHING
            RETURNING transaction_hash
            """,
            {
                "transaction_hash": record.transaction_hash,
                "log_index": record.log_index,
                "user_address": record.user_address,
                "amount": record.amount,
                "block_number": record.block_number,
                "block_timestamp": record.block_timestamp,
            },
        )
        return InsertOutcome.INSERTED if rows else InsertOutcome.ALREADY_EXISTS

    def upsert_withdraw_request(self, record: WithdrawRequestRow) -> None:
        """Replace any request for the user; callers apply in ledger order."""
        self._db.execute(
            """
            INSERT INTO withdraw_request (
                user_address, amount, unlock_time, status,
                transaction_hash, block_number, log_index, updated_at_utc
            ) VALUES (
                :user_address, :amount, :unlock_time, :status,
                :transaction_hash, :block_number, :log_index, CURRENT_TIMESTAMP
            )
            ON CONFLICT (user_address) DO UPDATE
            SET amount = excluded.amount,
                unlock_time = excluded.unlock_time,
                status = excluded.status,
                transaction_hash = excluded.transaction_hash,
                block_number = excluded.block_number,
                log_index = excluded.log_index,
                updated_at_utc = CURRENT_TIMESTAMP
            """,
            {
                "user_address": record.user_address,
                "amount": record.amount,
                "unlock_time": record.unlock_time,
                "status": record.status.value,
                "transaction_hash": record.transaction_hash,
                "block_number": record.block_number,
                "log_index": record.log_index,
            },
        )

    def query_history(self, user: str) -> Sequence[DepositRow]:
        """Deposits for ``user``, newest first."""
        rows = self._db.fetch_all(
            """
            SELECT transaction_hash, log_index, user_address, amount,
                   block_number, block_timestamp
            FROM deposit_record
            WHERE user_address = :user_address
            ORDER BY block_number DESC, log_index DESC
            """,
            {"user_address": user.lower()},
        )
        return [_deposit_from_row(row) for row in rows]

    def get_withdraw_request(self, user: str) -> Optional[WithdrawRequestRow]:
        row = self._db.fetch_one(
            """
            SELECT user_address, amount, unlock_time, status,
                   transaction_hash, block_number, log_index
            FROM withdraw_request
            WHERE user_address = :user_address
            """,
            {"user_address": user.lower()},
        )
        if row is None:
            return None
        return WithdrawRequestRow(
            user_address=str(row["user_address"]),
            amount=str(row["amount"]),
            unlock_time=int(row["unlock_time"]),
            status=WithdrawStatus(str(row["status"])),
            transaction_hash=str(row["transaction_hash"]),
            block_number=int(row["block_number"]),
            log_index=int(row["log_index"]),
        )

    def record_skipped_event(self, event: LedgerEvent, reason: str) -> None:
        """Persist a malformed event identity for manual replay (idempotent)."""
        self._db.execute(
            """
            INSERT INTO skipped_ledger_event (
                transaction_hash, log_index, event_kind, block_number, reason
            ) VALUES (
                :transaction_hash, :log_index, :event_kind, :block_number, :reason
            )
            ON CONFLICT (transaction_hash, log_index) DO NOTHING
            """,
            {
                "transaction_hash": event.transaction_hash,
                "log_index": event.log_index,
                "event_kind": event.kind.value,
                "block_number": event.block_number,
                "reason": reason,
            },
        )
