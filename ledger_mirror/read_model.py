"""Read model: mirrored history plus chain-authoritative balances."""

from __future__ import annotations

from typing import Any, Optional

from ledger_mirror.event_contract import BalanceQuery
from ledger_mirror.record_store import RecordStore


class LedgerReadModel:
    """Query surface for callers; never blocks on ingestion."""

    def __init__(self, *, balance_query: BalanceQuery, records: RecordStore) -> None:
        self._balance_query = balance_query
        self._records = records

    def get_current_balance(self, address: str) -> str:
        """Return the ledger balance as a decimal string.

        Always asks the ledger; StateQueryFailure propagates unchanged.
        """
        return str(self._balance_query.balance_of(address))

    def get_history(self, address: str) -> list[dict[str, Any]]:
        return [
            {
                "user": row.user_address,
                "amount": row.amount,
                "transactionHash": row.transaction_hash,
                "blockNumber": row.block_number,
                "timestamp": row.block_timestamp,
            }
            for row in self._records.query_history(address)
        ]

    def get_withdraw_request(self, address: str) -> Optional[dict[str, Any]]:
        row = self._records.get_withdraw_request(address)
        if row is None:
            return None
        return {
            "user": row.user_address,
            "amount": row.amount,
            "unlockTime": row.unlock_time,
            "status": row.status.value,
        }
