#!/usr/bin/env python3
"""Vault ledger mirror operator CLI."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import signal
import sys
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from ledger_mirror.checkpoint_store import CheckpointStore
from ledger_mirror.config import MirrorConfig, load_mirror_config
from ledger_mirror.db_adapter import connection_factory, create_db_engine, create_schema, is_in_memory_url
from ledger_mirror.errors import StateQueryFailure
from ledger_mirror.ingestion_engine import IngestionEngine, IngestionSettings
from ledger_mirror.read_model import LedgerReadModel
from ledger_mirror.record_store import RecordStore
from ledger_mirror.web3_source import Web3BalanceQuery, Web3EventSource

logger = logging.getLogger("ledger_mirror.cli")


def _configure_logging(config: MirrorConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )


def _build_engine(config: MirrorConfig, engine_db: Any) -> IngestionEngine:
    if is_in_memory_url(config.database_url):
        raise RuntimeError("DATABASE_URL must not be in-memory SQLite; ingestion workers need separate connections")
    return IngestionEngine(
        source=Web3EventSource.from_config(config),
        connect=connection_factory(engine_db),
        settings=IngestionSettings.from_config(config),
    )


def _install_signal_handlers(engine: IngestionEngine) -> None:
    def _handle(signum: int, frame: Any) -> None:
        logger.info("Received signal %s; draining ingestion", signum)
        engine.request_stop()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Vault ledger mirror CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create mirror tables")
    subparsers.add_parser("run", help="Run ingestion until SIGINT/SIGTERM")
    subparsers.add_parser("backfill", help="Run one backfill sweep per event kind")
    subparsers.add_parser("status", help="Print stored checkpoints")

    balance = subparsers.add_parser("balance", help="Print the ledger balance for an address")
    balance.add_argument("address")

    history = subparsers.add_parser("history", help="Print mirrored deposits for an address")
    history.add_argument("address")

    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    config = load_mirror_config()
    _configure_logging(config)
    engine_db = create_db_engine(config.database_url)
    try:
        if args.command == "init-db":
            create_schema(engine_db)
            return 0

        if args.command == "run":
            engine = _build_engine(config, engine_db)
            _install_signal_handlers(engine)
            try:
                engine.run_forever()
            finally:
                engine.close()
            failures = engine.failures()
            for kind, exc in failures.items():
                logger.error("kind=%s halted: %s", kind.value, exc)
            return 1 if failures else 0

        if args.command == "backfill":
            engine = _build_engine(config, engine_db)
            try:
                results = engine.run_backfill_once()
            finally:
                engine.close()
            print(
                json.dumps(
                    [
                        {
                            "kind": result.kind.value,
                            "from_block": result.from_block,
                            "to_block": result.to_block,
                            "applied": result.applied,
                            "duplicates": result.duplicates,
                            "skipped": result.skipped,
                        }
                        for result in results
                    ],
                    sort_keys=True,
                )
            )
            return 0

        connect = connection_factory(engine_db)
        db = connect()
        try:
            if args.command == "status":
                print(json.dumps(CheckpointStore(db).all(), sort_keys=True))
                return 0

            read_model = LedgerReadModel(
                balance_query=Web3BalanceQuery.from_config(config),
                records=RecordStore(db),
            )
            if args.command == "balance":
                try:
                    balance = read_model.get_current_balance(args.address)
                except StateQueryFailure as exc:
                    print(json.dumps({"error": str(exc)}), file=sys.stderr)
                    return 2
                print(json.dumps({"address": args.address.lower(), "balance": balance}, sort_keys=True))
                return 0

            if args.command == "history":
                print(json.dumps(read_model.get_history(args.address), sort_keys=True))
                return 0
        finally:
            db.close()

        raise SystemExit(f"Unknown command: {args.command}")
    finally:
        engine_db.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
