"""Supervised ingestion engine: backfill, live subscription and reconnect recovery."""

from __future__ import annotations

from dataclasses import dataclass
import enum
import logging
import threading
from typing import Callable, Iterable, Optional, Sequence

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from backend.db.enums import EventKind
from ledger_mirror.checkpoint_store import CheckpointStore
from ledger_mirror.config import MirrorConfig
from ledger_mirror.db_adapter import LedgerDatabase
from ledger_mirror.errors import MalformedEventError, TransientTransportFault
from ledger_mirror.event_apply import ApplyOutcome, apply_event
from ledger_mirror.event_contract import LedgerEvent, LedgerEventSource, ledger_order
from ledger_mirror.record_store import RecordStore

logger = logging.getLogger(__name__)

# Faults that end in RECONNECTING rather than halting the worker.
_RETRYABLE_ERRORS = (TransientTransportFault, OperationalError)


class WorkerState(str, enum.Enum):
    """Per-kind ingestion state."""

    INIT = "INIT"
    BACKFILLING = "BACKFILLING"
    LIVE = "LIVE"
    RECONNECTING = "RECONNECTING"
    STOPPED = "STOPPED"


@dataclass(frozen=True)
class IngestionSettings:
    """Engine tuning knobs."""

    start_block: int = 0
    sweep_window_blocks: int = 10000
    reconnect_backoff_initial_seconds: float = 1.0
    reconnect_backoff_max_seconds: float = 60.0

    @classmethod
    def from_config(cls, config: MirrorConfig) -> "IngestionSettings":
        return cls(
            start_block=config.start_block,
            sweep_window_blocks=config.sweep_window_blocks,
            reconnect_backoff_initial_seconds=config.reconnect_backoff_initial_seconds,
            reconnect_backoff_max_seconds=config.reconnect_backoff_max_seconds,
        )


class ReconnectBackoff:
    """Bounded exponential backoff with no attempt limit."""

    def __init__(self, initial_seconds: float, max_seconds: float, factor: float = 2.0) -> None:
        self._initial = initial_seconds
        self._max = max_seconds
        self._factor = factor
        self._next = initial_seconds
        self.attempts = 0

    def next_delay(self) -> float:
        delay = self._next
        self._next = min(self._next * self._factor, self._max)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self._next = self._initial
        self.attempts = 0


@dataclass
class _Tally:
    applied: int = 0
    duplicates: int = 0
    skipped: int = 0

    def record(self, outcome: Optional[ApplyOutcome]) -> None:
        if outcome is None:
            self.skipped += 1
        elif outcome is ApplyOutcome.ALREADY_EXISTS:
            self.duplicates += 1
        else:
            self.applied += 1


@dataclass(frozen=True)
class SweepResult:
    """Summary of one backfill sweep for one kind."""

    kind: EventKind
    from_block: int
    to_block: int
    applied: int
    duplicates: int
    skipped: int
    completed: bool


@dataclass(frozen=True)
class WorkerStatus:
    """User-facing worker status payload."""

    kind: EventKind
    state: WorkerState
    checkpoint: Optional[int]
    last_error: Optional[str]


class KindWorker:
    """Sequential ingestion for a single event kind, applied strictly in ledger order."""

    def __init__(
        self,
        *,
        kind: EventKind,
        source: LedgerEventSource,
        db: LedgerDatabase,
        settings: IngestionSettings,
        stop: threading.Event,
    ) -> None:
        self.kind = kind
        self._source = source
        self._db = db
        self._settings = settings
        self._stop = stop
        self._checkpoints = CheckpointStore(db)
        self._records = RecordStore(db)
        self._backoff = ReconnectBackoff(
            settings.reconnect_backoff_initial_seconds,
            settings.reconnect_backoff_max_seconds,
        )
        self._state = WorkerState.INIT
        self._last_position: Optional[tuple[int, int]] = None
        self._last_checkpoint: Optional[int] = None
        self.last_error: Optional[str] = None
        self.failure: Optional[BaseException] = None

    @property
    def state(self) -> WorkerState:
        return self._state

    def status(self) -> WorkerStatus:
        return WorkerStatus(
            kind=self.kind,
            state=self._state,
            checkpoint=self._last_checkpoint,
            last_error=self.last_error,
        )

    def _transition(self, state: WorkerState) -> None:
        if state is self._state:
            return
        logger.info("kind=%s %s -> %s", self.kind.value, self._state.value, state.value)
        self._state = state

    def _rollback_quietly(self) -> None:
        try:
            self._db.rollback()
        except SQLAlchemyError as exc:
            logger.warning("kind=%s rollback failed: %s", self.kind.value, exc)

    def _apply(self, event: LedgerEvent) -> Optional[ApplyOutcome]:
        try:
            outcome = apply_event(self._records, event)
        except MalformedEventError as exc:
            logger.warning(
                "Skipping malformed event kind=%s tx=%s log_index=%s block=%s: %s",
                event.kind.value,
                event.transaction_hash,
                event.log_index,
                event.block_number,
                exc.reason,
            )
            self._records.record_skipped_event(event, exc.reason)
            return None
        if self._last_position is None or event.position > self._last_position:
            self._last_position = event.position
        return outcome

    def _apply_in_order(self, events: Iterable[LedgerEvent], tally: _Tally) -> bool:
        """Apply events sorted by ledger position; False when stopped part-way."""
        for event in ledger_order(events):
            if self._stop.is_set():
                return False
            tally.record(self._apply(event))
        return True

    def _commit_through(self, block: int) -> None:
        # Records must be durable before the checkpoint claims them.
        self._db.commit()
        self._checkpoints.advance(self.kind, block)
        self._db.commit()
        self._last_checkpoint = block

    def run_backfill_sweep(self) -> SweepResult:
        """Close the gap between the checkpoint and the head observed now."""
        checkpoint = self._checkpoints.get(self.kind)
        self._last_checkpoint = checkpoint
        start = max(checkpoint + 1, self._settings.start_block)
        head = self._source.current_head()
        tally = _Tally()
        if head < start:
            return SweepResult(self.kind, start, head, 0, 0, 0, completed=True)

        window = max(self._settings.sweep_window_blocks, 1)
        window_start = start
        while window_start <= head:
            window_end = min(window_start + window - 1, head)
            events = self._source.query_range(self.kind, window_start, window_end)
            if not self._apply_in_order(events, tally):
                self._db.commit()
                return SweepResult(
                    self.kind, start, head, tally.applied, tally.duplicates, tally.skipped, completed=False
                )
            self._commit_through(window_end)
            window_start = window_end + 1

        logger.info(
            "kind=%s backfill %s..%s applied=%s duplicates=%s skipped=%s",
            self.kind.value,
            start,
            head,
            tally.applied,
            tally.duplicates,
            tally.skipped,
        )
        return SweepResult(self.kind, start, head, tally.applied, tally.duplicates, tally.skipped, completed=True)

    def _with_replay(self, events: Sequence[LedgerEvent]) -> list[LedgerEvent]:
        """Merge a late batch with a ledger replay so later requests still win."""
        ordered = ledger_order(events)
        if not ordered or self._last_position is None:
            return ordered
        earliest = ordered[0]
        if earliest.position >= self._last_position:
            return ordered
        replay_to = self._last_position[0]
        logger.warning(
            "kind=%s late event at %s behind applied %s; replaying blocks %s..%s",
            self.kind.value,
            earliest.position,
            self._last_position,
            earliest.block_number,
            replay_to,
        )
        replayed = self._source.query_range(self.kind, earliest.block_number, replay_to)
        merged = {event.identity: event for event in replayed}
        merged.update({event.identity: event for event in ordered})
        return ledger_order(merged.values())

    def _run_live(self) -> None:
        from_block = max(self._checkpoints.get(self.kind) + 1, self._settings.start_block)
        for batch in self._source.subscribe((self.kind,), from_block=from_block, stop=self._stop):
            tally = _Tally()
            if not self._apply_in_order(self._with_replay(batch.events), tally):
                self._db.commit()
                return
            self._commit_through(batch.through_block)
            self._backoff.reset()
            if tally.applied or tally.duplicates or tally.skipped:
                logger.debug(
                    "kind=%s live through=%s applied=%s duplicates=%s skipped=%s",
                    self.kind.value,
                    batch.through_block,
                    tally.applied,
                    tally.duplicates,
                    tally.skipped,
                )

    def _step(self) -> None:
        if self._state is WorkerState.INIT:
            self._last_checkpoint = self._checkpoints.get(self.kind)
            logger.info("kind=%s loaded checkpoint=%s", self.kind.value, self._last_checkpoint)
            self._transition(WorkerState.BACKFILLING)
        elif self._state in (WorkerState.BACKFILLING, WorkerState.RECONNECTING):
            result = self.run_backfill_sweep()
            if result.completed:
                self._transition(WorkerState.LIVE)
        elif self._state is WorkerState.LIVE:
            self._run_live()

    def run(self) -> None:
        """Worker loop; returns once stopped or halted by a non-retryable failure."""
        try:
            while not self._stop.is_set():
                try:
                    self._step()
                except _RETRYABLE_ERRORS as exc:
                    self._rollback_quietly()
                    self.last_error = f"{type(exc).__name__}: {exc}"
                    delay = self._backoff.next_delay()
                    logger.warning(
                        "kind=%s transport fault (%s); reconnect attempt %s in %.1fs",
                        self.kind.value,
                        exc,
                        self._backoff.attempts,
                        delay,
                    )
                    if self._state is not WorkerState.INIT:
                        self._transition(WorkerState.RECONNECTING)
                    self._stop.wait(delay)
        except Exception as exc:
            self._rollback_quietly()
            self.failure = exc
            self.last_error = f"{type(exc).__name__}: {exc}"
            logger.exception("kind=%s ingestion halted; operator intervention required", self.kind.value)
        finally:
            self._transition(WorkerState.STOPPED)

    def close(self) -> None:
        self._db.close()


class IngestionEngine:
    """Owns one worker per event kind; kinds run concurrently, each strictly ordered."""

    def __init__(
        self,
        *,
        source: LedgerEventSource,
        connect: Callable[[], LedgerDatabase],
        settings: IngestionSettings,
        kinds: Sequence[EventKind] = tuple(EventKind),
    ) -> None:
        self._stop = threading.Event()
        self._workers: dict[EventKind, KindWorker] = {
            kind: KindWorker(kind=kind, source=source, db=connect(), settings=settings, stop=self._stop)
            for kind in kinds
        }
        self._threads: dict[EventKind, threading.Thread] = {}

    @property
    def workers(self) -> dict[EventKind, KindWorker]:
        return dict(self._workers)

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        """Spawn one thread per kind."""
        if self._threads:
            raise RuntimeError("Ingestion engine already started")
        for kind, worker in self._workers.items():
            thread = threading.Thread(target=worker.run, name=f"ingest-{kind.value}", daemon=True)
            self._threads[kind] = thread
            thread.start()
        logger.info("Ingestion engine started kinds=%s", [kind.value for kind in self._workers])

    def request_stop(self) -> None:
        """Signal-safe shutdown request; run_forever() drains and returns."""
        self._stop.set()

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Signal cooperative shutdown and wait for in-flight applies to drain."""
        self._stop.set()
        for kind, thread in self._threads.items():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("kind=%s worker did not drain within %ss", kind.value, timeout)
        logger.info("Ingestion engine stopped")

    def run_forever(self, *, supervise_seconds: float = 1.0) -> None:
        """Run until stop() is called or every worker has halted."""
        self.start()
        try:
            while not self._stop.is_set():
                if not any(thread.is_alive() for thread in self._threads.values()):
                    logger.error("All ingestion workers halted")
                    break
                self._stop.wait(supervise_seconds)
        finally:
            self.stop()

    def run_backfill_once(self) -> list[SweepResult]:
        """Synchronous single sweep per kind; retryable faults propagate."""
        return [worker.run_backfill_sweep() for worker in self._workers.values()]

    def status(self) -> list[WorkerStatus]:
        return [worker.status() for worker in self._workers.values()]

    def failures(self) -> dict[EventKind, BaseException]:
        return {kind: worker.failure for kind, worker in self._workers.items() if worker.failure is not None}

    def close(self) -> None:
        for kind, worker in self._workers.items():
            thread = self._threads.get(kind)
            if thread is not None and thread.is_alive():
                continue
            worker.close()
