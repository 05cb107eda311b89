"""Web3-backed Vault event source and balance query adapters."""

from __future__ import annotations

from collections import OrderedDict
import logging
import threading
import time
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from requests.exceptions import RequestException
from web3 import Web3
from web3.exceptions import Web3Exception

from backend.db.enums import EventKind
from ledger_mirror.config import MirrorConfig
from ledger_mirror.errors import StateQueryFailure, TransientTransportFault
from ledger_mirror.event_contract import EventBatch, LedgerEvent, ledger_order
from ledger_mirror.vault_abi import DEFAULT_VAULT_ABI, VaultAbi, load_vault_abi

logger = logging.getLogger(__name__)

BALANCES_SELECTOR = bytes(Web3.keccak(text="balances(address)"))[:4]

# JSON-RPC errors surface as ValueError on older web3 releases.
_TRANSPORT_ERRORS = (RequestException, Web3Exception, OSError, ValueError)
# Malformed hex in topics or data surfaces as ValueError from HexBytes.
_DECODE_ERRORS = (DecodingError, Web3Exception, ValueError)
_RANGE_LIMIT_HINTS = ("more than", "too large", "too many", "range", "limit exceeded", "response size")
_TIMESTAMP_CACHE_SIZE = 4096


class _RangeTooLarge(Exception):
    pass


def _parse_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def _to_hex(value: Any) -> str:
    return "0x" + bytes(HexBytes(value)).hex()


def _looks_like_range_limit(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(hint in message for hint in _RANGE_LIMIT_HINTS)


def build_web3(config: MirrorConfig) -> Web3:
    """HTTP provider bound to the configured ledger RPC endpoint."""
    return Web3(
        Web3.HTTPProvider(
            config.ledger_rpc_url,
            request_kwargs={"timeout": config.rpc_timeout_seconds},
        )
    )


class Web3EventSource:
    """Vault event source over ``eth_getLogs`` polling."""

    def __init__(
        self,
        *,
        w3: Any,
        contract_address: str,
        confirmations: int = 0,
        log_batch_blocks: int = 2000,
        poll_interval_seconds: float = 4.0,
        stall_timeout_seconds: float = 120.0,
        abi: Optional[Sequence[Mapping[str, Any]]] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        self._w3 = w3
        self._abi = VaultAbi(abi if abi is not None else DEFAULT_VAULT_ABI)
        self._contract_address = Web3.to_checksum_address(contract_address)
        self._confirmations = confirmations
        self._log_batch_blocks = max(log_batch_blocks, 1)
        self._poll_interval_seconds = poll_interval_seconds
        self._stall_timeout_seconds = stall_timeout_seconds
        self._monotonic = monotonic or time.monotonic
        self._topics = {kind: self._abi.topic(kind) for kind in EventKind}
        self._timestamps: OrderedDict[int, int] = OrderedDict()
        # Shared by the per-kind worker threads.
        self._cache_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: MirrorConfig, w3: Optional[Any] = None) -> "Web3EventSource":
        return cls(
            w3=w3 or build_web3(config),
            contract_address=config.vault_contract_address,
            confirmations=config.confirmations,
            log_batch_blocks=config.log_batch_blocks,
            poll_interval_seconds=config.poll_interval_seconds,
            stall_timeout_seconds=config.stall_timeout_seconds,
            abi=load_vault_abi(config.vault_abi_path),
        )

    def current_head(self) -> int:
        try:
            latest = _parse_int(self._w3.eth.block_number)
        except _TRANSPORT_ERRORS as exc:
            raise TransientTransportFault(f"eth_blockNumber failed: {exc}") from exc
        return max(0, latest - self._confirmations)

    def _block_timestamp(self, block_number: int) -> int:
        with self._cache_lock:
            cached = self._timestamps.get(block_number)
            if cached is not None:
                self._timestamps.move_to_end(block_number)
                return cached
        try:
            block = self._w3.eth.get_block(block_number)
        except _TRANSPORT_ERRORS as exc:
            raise TransientTransportFault(f"eth_getBlockByNumber {block_number} failed: {exc}") from exc
        timestamp = _parse_int(block["timestamp"])
        with self._cache_lock:
            self._timestamps[block_number] = timestamp
            if len(self._timestamps) > _TIMESTAMP_CACHE_SIZE:
                self._timestamps.popitem(last=False)
        return timestamp

    def _get_logs(self, kind: EventKind, start: int, end: int) -> Sequence[Mapping[str, Any]]:
        params = {
            "address": self._contract_address,
            "fromBlock": start,
            "toBlock": end,
            "topics": [self._topics[kind]],
        }
        try:
            return self._w3.eth.get_logs(params)
        except _TRANSPORT_ERRORS as exc:
            if end > start and _looks_like_range_limit(exc):
                raise _RangeTooLarge(str(exc)) from exc
            raise TransientTransportFault(f"eth_getLogs {kind.value} {start}..{end} failed: {exc}") from exc

    def _decode_log(self, kind: EventKind, log: Mapping[str, Any]) -> Optional[LedgerEvent]:
        tx_hash = log.get("transactionHash")
        block_number = log.get("blockNumber")
        log_index = log.get("logIndex")
        if tx_hash is None or block_number is None or log_index is None:
            logger.warning("Dropping unidentifiable %s log (pending or truncated): %s", kind.value, dict(log))
            return None
        block_number = _parse_int(block_number)
        try:
            transaction_hash = _to_hex(tx_hash)
        except ValueError:
            logger.warning("Dropping %s log with malformed transaction hash: %r", kind.value, tx_hash)
            return None

        actor: Optional[str] = None
        amount: Optional[int] = None
        unlock_time: Optional[int] = None
        try:
            entry = {
                "address": log.get("address") or self._contract_address,
                "blockHash": log.get("blockHash"),
                "blockNumber": block_number,
                "logIndex": _parse_int(log_index),
                "transactionHash": HexBytes(tx_hash),
                "transactionIndex": log.get("transactionIndex"),
                "topics": [HexBytes(topic) for topic in log.get("topics") or ()],
                "data": HexBytes(log.get("data") or b""),
            }
            values = self._abi.decode(kind, self._w3.codec, entry)
        except _DECODE_ERRORS as exc:
            logger.warning("Undecodable %s log tx=%s: %s", kind.value, transaction_hash, exc)
        else:
            actor = str(values[0]).lower()
            amount = int(values[1])
            if kind is EventKind.WITHDRAW_REQUESTED:
                unlock_time = int(values[2])

        return LedgerEvent(
            kind=kind,
            block_number=block_number,
            transaction_hash=transaction_hash,
            log_index=_parse_int(log_index),
            block_timestamp=self._block_timestamp(block_number),
            actor=actor,
            amount=amount,
            unlock_time=unlock_time,
        )

    def query_range(self, kind: EventKind, from_block: int, to_block: int) -> Iterator[LedgerEvent]:
        """Yield events in [from_block, to_block], chunked and in ledger order."""
        start = from_block
        batch_blocks = self._log_batch_blocks
        while start <= to_block:
            end = min(start + batch_blocks - 1, to_block)
            try:
                raw_logs = self._get_logs(kind, start, end)
            except _RangeTooLarge as exc:
                batch_blocks = max(1, (end - start + 1) // 2)
                logger.warning(
                    "Log range %s..%s rejected (%s); retrying with %s blocks",
                    start,
                    end,
                    exc,
                    batch_blocks,
                )
                continue
            decoded = (self._decode_log(kind, log) for log in raw_logs)
            yield from ledger_order(event for event in decoded if event is not None)
            start = end + 1

    def subscribe(
        self,
        kinds: Sequence[EventKind],
        *,
        from_block: int,
        stop: threading.Event,
    ) -> Iterator[EventBatch]:
        """Poll the head and yield one batch per advance until ``stop`` is set."""
        next_block = from_block
        last_head: Optional[int] = None
        last_progress = self._monotonic()
        while not stop.is_set():
            head = self.current_head()
            now = self._monotonic()
            if last_head is None or head > last_head:
                last_head = head
                last_progress = now
            elif now - last_progress > self._stall_timeout_seconds:
                raise TransientTransportFault(
                    f"Ledger head stalled at {head} for {now - last_progress:.0f}s"
                )

            if head >= next_block:
                events: list[LedgerEvent] = []
                for kind in kinds:
                    events.extend(self.query_range(kind, next_block, head))
                yield EventBatch(events=tuple(ledger_order(events)), through_block=head)
                next_block = head + 1

            stop.wait(self._poll_interval_seconds)


class Web3BalanceQuery:
    """Reads ``balances(address)`` from the Vault contract."""

    def __init__(self, *, w3: Any, contract_address: str) -> None:
        self._w3 = w3
        self._contract_address = Web3.to_checksum_address(contract_address)

    @classmethod
    def from_config(cls, config: MirrorConfig, w3: Optional[Any] = None) -> "Web3BalanceQuery":
        return cls(w3=w3 or build_web3(config), contract_address=config.vault_contract_address)

    def balance_of(self, address: str) -> int:
        if not isinstance(address, str) or not Web3.is_address(address.lower()):
            raise StateQueryFailure(f"Malformed address: {address!r}")
        calldata = BALANCES_SELECTOR + encode(["address"], [Web3.to_checksum_address(address.lower())])
        try:
            raw = self._w3.eth.call({"to": self._contract_address, "data": Web3.to_hex(calldata)})
        except _TRANSPORT_ERRORS as exc:
            raise StateQueryFailure(f"balances({address}) call failed: {exc}") from exc
        try:
            (balance,) = decode(["uint256"], bytes(HexBytes(raw)))
        except DecodingError as exc:
            raise StateQueryFailure(f"balances({address}) returned undecodable data: {exc}") from exc
        return int(balance)
