"""Vault ledger event mirror: ingestion engine, stores and read model."""

from ledger_mirror.checkpoint_store import CheckpointStore
from ledger_mirror.config import MirrorConfig, load_mirror_config
from ledger_mirror.errors import (
    LedgerMirrorError,
    MalformedEventError,
    RegressionError,
    StateQueryFailure,
    TransientTransportFault,
)
from ledger_mirror.event_apply import ApplyOutcome, apply_event
from ledger_mirror.event_contract import BalanceQuery, EventBatch, LedgerEvent, LedgerEventSource
from ledger_mirror.ingestion_engine import IngestionEngine, IngestionSettings, WorkerState
from ledger_mirror.read_model import LedgerReadModel
from ledger_mirror.record_store import InsertOutcome, RecordStore
from ledger_mirror.vault_abi import VaultAbi, load_vault_abi

__all__ = [
    "ApplyOutcome",
    "BalanceQuery",
    "CheckpointStore",
    "EventBatch",
    "IngestionEngine",
    "IngestionSettings",
    "InsertOutcome",
    "LedgerEvent",
    "LedgerEventSource",
    "LedgerMirrorError",
    "LedgerReadModel",
    "MalformedEventError",
    "MirrorConfig",
    "RecordStore",
    "RegressionError",
    "StateQueryFailure",
    "TransientTransportFault",
    "VaultAbi",
    "WorkerState",
    "apply_event",
    "load_mirror_config",
    "load_vault_abi",
]
