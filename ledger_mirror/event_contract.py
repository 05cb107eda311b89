"""Event source protocol and normalized ledger event types."""

from __future__ import annotations

from dataclasses import dataclass
import threading
from typing import Iterable, Iterator, Optional, Protocol, Sequence

from backend.db.enums import EventKind


@dataclass(frozen=True)
class LedgerEvent:
    """Normalized Vault event payload.

    Content fields are ``None`` when the raw log could not be decoded; the
    apply step rejects such events as malformed.
    """

    kind: EventKind
    block_number: int
    transaction_hash: str
    log_index: int
    block_timestamp: Optional[int]
    actor: Optional[str]
    amount: Optional[int]
    unlock_time: Optional[int] = None

    @property
    def position(self) -> tuple[int, int]:
        """Ledger order key."""
        return (self.block_number, self.log_index)

    @property
    def identity(self) -> tuple[str, int]:
        """Natural deduplication key."""
        return (self.transaction_hash, self.log_index)


@dataclass(frozen=True)
class EventBatch:
    """One subscription delivery.

    Every event of the subscribed kinds up to ``through_block`` has been
    delivered once this batch is yielded.
    """

    events: tuple[LedgerEvent, ...]
    through_block: int


def ledger_order(events: Iterable[LedgerEvent]) -> list[LedgerEvent]:
    """Sort events ascending by (block_number, log_index)."""
    return sorted(events, key=lambda event: event.position)


class LedgerEventSource(Protocol):
    """Ledger subscription and historical query primitives."""

    def subscribe(
        self,
        kinds: Sequence[EventKind],
        *,
        from_block: int,
        stop: threading.Event,
    ) -> Iterator[EventBatch]:
        """Yield batches from ``from_block`` until ``stop`` is set.

        Raises TransientTransportFault on transport loss.
        """

    def query_range(self, kind: EventKind, from_block: int, to_block: int) -> Iterator[LedgerEvent]:
        """Yield events of ``kind`` in [from_block, to_block] in ledger order."""

    def current_head(self) -> int:
        """Return the highest block considered final."""


class BalanceQuery(Protocol):
    """Point-in-time ledger balance primitive."""

    def balance_of(self, address: str) -> int:
        """Return the ledger balance for ``address``; raises StateQueryFailure."""
