"""Apply step shared by backfill, live and reconnect ingestion."""

from __future__ import annotations

import enum
import logging

from backend.db.enums import EventKind, WithdrawStatus
from ledger_mirror.errors import MalformedEventError
from ledger_mirror.event_contract import LedgerEvent
from ledger_mirror.record_store import DepositRow, InsertOutcome, RecordStore, WithdrawRequestRow

logger = logging.getLogger(__name__)


class ApplyOutcome(str, enum.Enum):
    """Observable result of applying one event."""

    INSERTED = "INSERTED"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    UPSERTED = "UPSERTED"


def _require_actor(event: LedgerEvent) -> str:
    if not event.actor:
        raise MalformedEventError(event, "missing user address")
    return event.actor.lower()


def _require_amount(event: LedgerEvent) -> str:
    if event.amount is None:
        raise MalformedEventError(event, "missing amount")
    if event.amount < 0:
        raise MalformedEventError(event, f"negative amount {event.amount}")
    return str(event.amount)


def apply_event(store: RecordStore, event: LedgerEvent) -> ApplyOutcome:
    """Materialize one event; raises MalformedEventError for unusable events."""
    user = _require_actor(event)
    amount = _require_amount(event)

    if event.kind is EventKind.DEPOSITED:
        if event.block_timestamp is None:
            raise MalformedEventError(event, "missing block timestamp")
        outcome = store.insert_deposit(
            DepositRow(
                user_address=user,
                amount=amount,
                transaction_hash=event.transaction_hash,
                block_number=event.block_number,
                block_timestamp=event.block_timestamp,
                log_index=event.log_index,
            )
        )
        if outcome is InsertOutcome.ALREADY_EXISTS:
            logger.info(
                "Deposit already mirrored, skip tx=%s log_index=%s",
                event.transaction_hash,
                event.log_index,
            )
            return ApplyOutcome.ALREADY_EXISTS
        logger.info("Deposit mirrored user=%s amount=%s block=%s", user, amount, event.block_number)
        return ApplyOutcome.INSERTED

    if event.unlock_time is None:
        raise MalformedEventError(event, "missing unlock time")
    store.upsert_withdraw_request(
        WithdrawRequestRow(
            user_address=user,
            amount=amount,
            unlock_time=event.unlock_time,
            status=WithdrawStatus.PENDING,
            transaction_hash=event.transaction_hash,
            block_number=event.block_number,
            log_index=event.log_index,
        )
    )
    logger.info("Withdraw request mirrored user=%s amount=%s unlock=%s", user, amount, event.unlock_time)
    return ApplyOutcome.UPSERTED
