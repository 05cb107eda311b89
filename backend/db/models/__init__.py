"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.checkpoint import IngestionCheckpoint, SkippedLedgerEvent
from backend.db.models.vault import DepositRecord, WithdrawRequestRecord

logger = logging.getLogger(__name__)

__all__ = [
    "DepositRecord",
    "IngestionCheckpoint",
    "SkippedLedgerEvent",
    "WithdrawRequestRecord",
]
