"""Ingestion engine lifecycle: backfill, live, reconnect and halt behavior."""

from __future__ import annotations

import threading
import time
from typing import Callable

import pytest

from backend.db.enums import EventKind
from ledger_mirror.checkpoint_store import CheckpointStore
from ledger_mirror.db_adapter import connection_factory
from ledger_mirror.errors import RegressionError, TransientTransportFault
from ledger_mirror.event_apply import apply_event
from ledger_mirror.event_contract import EventBatch
from ledger_mirror.ingestion_engine import (
    IngestionEngine,
    IngestionSettings,
    KindWorker,
    ReconnectBackoff,
    WorkerState,
)
from ledger_mirror.record_store import RecordStore
from tests.utils.fake_ledger import ALICE, BOB, ScriptedLedger, deposit, withdraw_request


_FAST = IngestionSettings(
    sweep_window_blocks=10000,
    reconnect_backoff_initial_seconds=0.01,
    reconnect_backoff_max_seconds=0.02,
)


def _worker(source: ScriptedLedger, db, kind: EventKind = EventKind.DEPOSITED, settings: IngestionSettings = _FAST) -> KindWorker:  # type: ignore[no-untyped-def]
    return KindWorker(kind=kind, source=source, db=db, settings=settings, stop=threading.Event())


def _seed_checkpoint(db, kind: EventKind, block: int) -> None:  # type: ignore[no-untyped-def]
    CheckpointStore(db).advance(kind, block)
    db.commit()


def _deposit_blocks(db, user: str = ALICE) -> list[int]:  # type: ignore[no-untyped-def]
    return sorted(row.block_number for row in RecordStore(db).query_history(user))


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached before timeout")
        time.sleep(0.01)


def test_reconnect_backoff_doubles_to_cap_and_resets() -> None:
    backoff = ReconnectBackoff(1.0, 8.0)
    assert [backoff.next_delay() for _ in range(5)] == [1.0, 2.0, 4.0, 8.0, 8.0]
    assert backoff.attempts == 5

    backoff.reset()
    assert backoff.next_delay() == 1.0
    assert backoff.attempts == 1


def test_ingestion_settings_from_config() -> None:
    from ledger_mirror.config import MirrorConfig

    config = MirrorConfig(
        ledger_rpc_url="http://localhost:8545",
        vault_contract_address="0x" + "11" * 20,
        database_url="sqlite://",
        start_block=77,
        confirmations=2,
        log_batch_blocks=500,
        sweep_window_blocks=900,
        poll_interval_seconds=1.0,
        stall_timeout_seconds=30.0,
        rpc_timeout_seconds=5.0,
        reconnect_backoff_initial_seconds=0.5,
        reconnect_backoff_max_seconds=16.0,
        log_level="INFO",
    )
    settings = IngestionSettings.from_config(config)
    assert settings == IngestionSettings(
        start_block=77,
        sweep_window_blocks=900,
        reconnect_backoff_initial_seconds=0.5,
        reconnect_backoff_max_seconds=16.0,
    )


def test_backfill_closes_gap_from_checkpoint(ledger_db) -> None:  # type: ignore[no-untyped-def]
    _seed_checkpoint(ledger_db, EventKind.DEPOSITED, 100)
    source = ScriptedLedger([deposit(block) for block in range(95, 106)], heads=(105,))

    result = _worker(source, ledger_db).run_backfill_sweep()

    assert result.completed is True
    assert (result.from_block, result.to_block, result.applied) == (101, 105, 5)
    assert _deposit_blocks(ledger_db) == [101, 102, 103, 104, 105]
    assert CheckpointStore(ledger_db).get(EventKind.DEPOSITED) >= 105
    assert source.query_calls == [(EventKind.DEPOSITED, 101, 105)]


def test_backfill_replays_after_crash_between_write_and_checkpoint(ledger_db) -> None:  # type: ignore[no-untyped-def]
    _seed_checkpoint(ledger_db, EventKind.DEPOSITED, 100)
    events = [deposit(block) for block in range(101, 106)]
    apply_event(RecordStore(ledger_db), events[0])
    apply_event(RecordStore(ledger_db), events[1])
    ledger_db.commit()
    source = ScriptedLedger(events, heads=(105,))

    result = _worker(source, ledger_db).run_backfill_sweep()

    assert (result.applied, result.duplicates) == (3, 2)
    assert _deposit_blocks(ledger_db) == [101, 102, 103, 104, 105]
    assert CheckpointStore(ledger_db).get(EventKind.DEPOSITED) == 105


def test_backfill_walks_windows_and_checkpoints_each(ledger_db) -> None:  # type: ignore[no-untyped-def]
    settings = IngestionSettings(sweep_window_blocks=2)
    source = ScriptedLedger([deposit(block) for block in range(1, 6)], heads=(5,))

    _worker(source, ledger_db, settings=settings).run_backfill_sweep()

    assert [(start, end) for _, start, end in source.query_calls] == [(1, 2), (3, 4), (5, 5)]
    assert CheckpointStore(ledger_db).get(EventKind.DEPOSITED) == 5


def test_fresh_deployment_starts_at_start_block(ledger_db) -> None:  # type: ignore[no-untyped-def]
    settings = IngestionSettings(start_block=1000)
    source = ScriptedLedger([deposit(5), deposit(1003)], heads=(1005,))

    _worker(source, ledger_db, settings=settings).run_backfill_sweep()

    assert source.query_calls == [(EventKind.DEPOSITED, 1000, 1005)]
    assert _deposit_blocks(ledger_db) == [1003]


def test_live_subscription_starts_at_start_block_when_head_is_behind(ledger_db) -> None:  # type: ignore[no-untyped-def]
    settings = IngestionSettings(
        start_block=1000,
        reconnect_backoff_initial_seconds=0.01,
        reconnect_backoff_max_seconds=0.02,
    )
    source = ScriptedLedger(heads=(500,), batches={EventKind.DEPOSITED: []})

    _worker(source, ledger_db, settings=settings).run()

    assert source.query_calls == []
    assert source.subscribe_calls == [((EventKind.DEPOSITED,), 1000)]
    assert CheckpointStore(ledger_db).get(EventKind.DEPOSITED) == 0


def test_backfill_with_head_behind_checkpoint_is_noop(ledger_db) -> None:  # type: ignore[no-untyped-def]
    _seed_checkpoint(ledger_db, EventKind.DEPOSITED, 50)
    source = ScriptedLedger(heads=(40,))

    result = _worker(source, ledger_db).run_backfill_sweep()

    assert result.completed is True
    assert source.query_calls == []
    assert CheckpointStore(ledger_db).get(EventKind.DEPOSITED) == 50


def test_stopped_sweep_does_not_advance_checkpoint(ledger_db) -> None:  # type: ignore[no-untyped-def]
    source = ScriptedLedger([deposit(3)], heads=(10,))
    stop = threading.Event()
    stop.set()
    worker = KindWorker(kind=EventKind.DEPOSITED, source=source, db=ledger_db, settings=_FAST, stop=stop)

    result = worker.run_backfill_sweep()

    assert result.completed is False
    assert CheckpointStore(ledger_db).get(EventKind.DEPOSITED) == 0


def test_malformed_event_is_skipped_and_recorded(ledger_db) -> None:  # type: ignore[no-untyped-def]
    bad = deposit(4, amount=None)
    source = ScriptedLedger([deposit(3), bad, deposit(5)], heads=(5,))

    result = _worker(source, ledger_db).run_backfill_sweep()

    assert (result.applied, result.skipped) == (2, 1)
    assert _deposit_blocks(ledger_db) == [3, 5]
    assert CheckpointStore(ledger_db).get(EventKind.DEPOSITED) == 5
    skipped = ledger_db.fetch_all("SELECT transaction_hash, log_index, reason FROM skipped_ledger_event", {})
    assert skipped == [{"transaction_hash": bad.transaction_hash, "log_index": 0, "reason": "missing amount"}]


def test_live_batch_is_sorted_before_apply(ledger_db) -> None:  # type: ignore[no-untyped-def]
    late, early = withdraw_request(12, amount=12), withdraw_request(10, amount=10)
    source = ScriptedLedger(
        heads=(9,),
        batches={EventKind.WITHDRAW_REQUESTED: [EventBatch(events=(late, early), through_block=12)]},
    )
    worker = _worker(source, ledger_db, kind=EventKind.WITHDRAW_REQUESTED)

    worker.run()

    current = RecordStore(ledger_db).get_withdraw_request(ALICE)
    assert current is not None and current.block_number == 12 and current.amount == "12"
    assert CheckpointStore(ledger_db).get(EventKind.WITHDRAW_REQUESTED) == 12
    assert worker.state is WorkerState.STOPPED


def test_late_event_across_batches_triggers_replay(ledger_db) -> None:  # type: ignore[no-untyped-def]
    early, late = withdraw_request(10, amount=10), withdraw_request(12, amount=12)
    source = ScriptedLedger(
        [early, late],
        heads=(9,),
        batches={
            EventKind.WITHDRAW_REQUESTED: [
                EventBatch(events=(late,), through_block=12),
                EventBatch(events=(early,), through_block=13),
            ]
        },
    )

    _worker(source, ledger_db, kind=EventKind.WITHDRAW_REQUESTED).run()

    current = RecordStore(ledger_db).get_withdraw_request(ALICE)
    assert current is not None and current.block_number == 12
    assert (EventKind.WITHDRAW_REQUESTED, 10, 12) in source.query_calls
    assert CheckpointStore(ledger_db).get(EventKind.WITHDRAW_REQUESTED) == 13


def test_live_redelivery_is_absorbed(ledger_db) -> None:  # type: ignore[no-untyped-def]
    event = deposit(7)
    source = ScriptedLedger(
        heads=(6,),
        batches={
            EventKind.DEPOSITED: [
                EventBatch(events=(event,), through_block=7),
                EventBatch(events=(event,), through_block=8),
            ]
        },
    )

    _worker(source, ledger_db).run()

    assert _deposit_blocks(ledger_db) == [7]
    assert CheckpointStore(ledger_db).get(EventKind.DEPOSITED) == 8


def test_transport_fault_reconnects_and_backfills_missed_events(ledger_db) -> None:  # type: ignore[no-untyped-def]
    source = ScriptedLedger(
        [deposit(3), deposit(7), deposit(9)],
        heads=(5, 9),
        batches={EventKind.DEPOSITED: [TransientTransportFault("socket closed")]},
    )
    worker = _worker(source, ledger_db)

    worker.run()

    assert _deposit_blocks(ledger_db) == [3, 7, 9]
    assert CheckpointStore(ledger_db).get(EventKind.DEPOSITED) == 9
    assert [from_block for _, from_block in source.subscribe_calls] == [6, 10]
    assert worker.last_error == "TransientTransportFault: socket closed"
    assert worker.failure is None
    assert worker.state is WorkerState.STOPPED


def test_head_fault_during_backfill_is_retried(ledger_db) -> None:  # type: ignore[no-untyped-def]
    source = ScriptedLedger([deposit(2)], heads=(2,))
    source.head_faults = 2
    worker = _worker(source, ledger_db)

    worker.run()

    assert _deposit_blocks(ledger_db) == [2]
    assert worker.last_error == "TransientTransportFault: head unavailable"
    assert worker.failure is None


def test_regression_halts_worker(ledger_db) -> None:  # type: ignore[no-untyped-def]
    _seed_checkpoint(ledger_db, EventKind.DEPOSITED, 50)
    source = ScriptedLedger(
        heads=(40,),
        batches={EventKind.DEPOSITED: [EventBatch(events=(), through_block=45)]},
    )
    worker = _worker(source, ledger_db)

    worker.run()

    assert isinstance(worker.failure, RegressionError)
    assert worker.state is WorkerState.STOPPED
    assert "stored=50 requested=45" in (worker.last_error or "")
    assert CheckpointStore(ledger_db).get(EventKind.DEPOSITED) == 50


def test_engine_regression_in_one_kind_leaves_other_running(db_engine) -> None:  # type: ignore[no-untyped-def]
    connect = connection_factory(db_engine)
    seed = connect()
    _seed_checkpoint(seed, EventKind.DEPOSITED, 50)
    seed.close()

    source = ScriptedLedger(
        [withdraw_request(20, user=BOB)],
        heads=(30,),
        batches={EventKind.DEPOSITED: [EventBatch(events=(), through_block=45)]},
        stop_when_drained=False,
    )
    engine = IngestionEngine(source=source, connect=connect, settings=_FAST)
    workers = engine.workers
    engine.start()
    try:
        _wait_for(lambda: workers[EventKind.DEPOSITED].state is WorkerState.STOPPED)
        _wait_for(lambda: workers[EventKind.WITHDRAW_REQUESTED].state is WorkerState.LIVE)
    finally:
        engine.stop(timeout=5.0)
        engine.close()

    failures = engine.failures()
    assert list(failures) == [EventKind.DEPOSITED]
    assert isinstance(failures[EventKind.DEPOSITED], RegressionError)

    statuses = {status.kind: status for status in engine.status()}
    assert statuses[EventKind.WITHDRAW_REQUESTED].checkpoint == 30
    assert statuses[EventKind.WITHDRAW_REQUESTED].last_error is None
    assert all(status.state is WorkerState.STOPPED for status in statuses.values())

    reader = connect()
    try:
        assert RecordStore(reader).get_withdraw_request(BOB) is not None
        assert CheckpointStore(reader).all() == {"Deposited": 50, "WithdrawRequested": 30}
    finally:
        reader.close()


def test_engine_stop_drains_live_workers(db_engine) -> None:  # type: ignore[no-untyped-def]
    source = ScriptedLedger([deposit(1), withdraw_request(2)], heads=(2,), stop_when_drained=False)
    engine = IngestionEngine(source=source, connect=connection_factory(db_engine), settings=_FAST)
    engine.start()
    with pytest.raises(RuntimeError, match="already started"):
        engine.start()

    _wait_for(lambda: all(status.state is WorkerState.LIVE for status in engine.status()))
    engine.stop(timeout=5.0)
    engine.close()

    assert engine.stop_requested is True
    assert all(status.state is WorkerState.STOPPED for status in engine.status())
    assert engine.failures() == {}


def test_run_forever_returns_when_every_worker_halts(db_engine) -> None:  # type: ignore[no-untyped-def]
    connect = connection_factory(db_engine)
    seed = connect()
    _seed_checkpoint(seed, EventKind.DEPOSITED, 50)
    seed.close()
    source = ScriptedLedger(
        heads=(40,),
        batches={EventKind.DEPOSITED: [EventBatch(events=(), through_block=45)]},
        stop_when_drained=False,
    )
    engine = IngestionEngine(source=source, connect=connect, settings=_FAST, kinds=(EventKind.DEPOSITED,))

    engine.run_forever(supervise_seconds=0.01)
    engine.close()

    assert set(engine.failures()) == {EventKind.DEPOSITED}


def test_run_backfill_once_sweeps_every_kind(db_engine) -> None:  # type: ignore[no-untyped-def]
    source = ScriptedLedger([deposit(3), withdraw_request(4), withdraw_request(6, amount=60)], heads=(6,))
    engine = IngestionEngine(source=source, connect=connection_factory(db_engine), settings=_FAST)

    results = engine.run_backfill_once()
    engine.close()

    assert [(result.kind, result.applied) for result in results] == [
        (EventKind.DEPOSITED, 1),
        (EventKind.WITHDRAW_REQUESTED, 2),
    ]
    reader = connection_factory(db_engine)()
    try:
        assert CheckpointStore(reader).all() == {"Deposited": 6, "WithdrawRequested": 6}
        current = RecordStore(reader).get_withdraw_request(ALICE)
        assert current is not None and current.amount == "60"
    finally:
        reader.close()
