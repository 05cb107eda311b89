"""Enumerations shared by the mirror schema and the ingestion engine."""

from __future__ import annotations

import enum
import logging

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    """Vault event kinds mirrored from the ledger."""

    DEPOSITED = "Deposited"
    WITHDRAW_REQUESTED = "WithdrawRequested"


class WithdrawStatus(str, enum.Enum):
    """Lifecycle status of a mirrored withdraw request."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


def sql_in_list(enum_cls: type[enum.Enum]) -> str:
    """Render enum values as a SQL IN-list body for CHECK constraints."""
    return ", ".join(f"'{member.value}'" for member in enum_cls)
