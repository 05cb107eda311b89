"""Typed failure taxonomy for ledger ingestion and reads."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ledger_mirror.event_contract import LedgerEvent


class LedgerMirrorError(Exception):
    """Base class for mirror failures."""


class TransientTransportFault(LedgerMirrorError):
    """Ledger transport lost or timed out; always retried with backoff."""


class RegressionError(LedgerMirrorError):
    """A checkpoint was asked to move backward.

    Signals an upstream logic or data-corruption bug. Fatal to the worker
    that raised it; never retried.
    """

    def __init__(self, kind: str, current_block: int, requested_block: int) -> None:
        super().__init__(
            f"Checkpoint regression for kind={kind}: "
            f"stored={current_block} requested={requested_block}"
        )
        self.kind = kind
        self.current_block = current_block
        self.requested_block = requested_block


class MalformedEventError(LedgerMirrorError):
    """An event is missing a required field and cannot be applied."""

    def __init__(self, event: "LedgerEvent", reason: str) -> None:
        super().__init__(
            f"Malformed {event.kind.value} event tx={event.transaction_hash} "
            f"log_index={event.log_index} block={event.block_number}: {reason}"
        )
        self.event = event
        self.reason = reason


class StateQueryFailure(LedgerMirrorError):
    """The ledger state query failed (unreachable node or malformed address)."""
