"""Durable per-kind ingestion checkpoints."""

from __future__ import annotations

import logging

from backend.db.enums import EventKind
from ledger_mirror.db_adapter import LedgerDatabase
from ledger_mirror.errors import RegressionError

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Monotonic last-processed-block marker per event kind."""

    def __init__(self, db: LedgerDatabase) -> None:
        self._db = db

    def get(self, kind: EventKind) -> int:
        """Return the stored checkpoint, 0 when absent."""
        row = self._db.fetch_one(
            """
            SELECT last_processed_block
            FROM ingestion_checkpoint
            WHERE event_kind = :event_kind
            """,
            {"event_kind": kind.value},
        )
        if row is None:
            return 0
        return int(row["last_processed_block"])

    def all(self) -> dict[str, int]:
        rows = self._db.fetch_all(
            """
            SELECT event_kind, last_processed_block
            FROM ingestion_checkpoint
            ORDER BY event_kind ASC
            """,
            {},
        )
        return {str(row["event_kind"]): int(row["last_processed_block"]) for row in rows}

    def advance(self, kind: EventKind, to_block: int) -> None:
        """Move the checkpoint forward; raises RegressionError on a backward move.

        Does not commit; callers commit after the record writes it covers.
        """
        current = self.get(kind)
        if to_block < current:
            raise RegressionError(kind.value, current, to_block)
        if to_block == current:
            return
        self._db.execute(
            """
            INSERT INTO ingestion_checkpoint (event_kind, last_processed_block, updated_at_utc)
            VALUES (:event_kind, :last_processed_block, CURRENT_TIMESTAMP)
            ON CONFLICT (event_kind) DO UPDATE
            SET last_processed_block = excluded.last_processed_block,
                updated_at_utc = CURRENT_TIMESTAMP
            """,
            {"event_kind": kind.value, "last_processed_block": to_block},
        )
        logger.debug("Checkpoint kind=%s advanced %s -> %s", kind.value, current, to_block)
