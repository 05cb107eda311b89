"""Environment-backed configuration for the ledger mirror."""

from __future__ import annotations

from dataclasses import dataclass
import os
import re


_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(frozen=True)
class MirrorConfig:
    """Canonical configuration surface for ingestion and reads."""

    ledger_rpc_url: str
    vault_contract_address: str
    database_url: str
    start_block: int
    confirmations: int
    log_batch_blocks: int
    sweep_window_blocks: int
    poll_interval_seconds: float
    stall_timeout_seconds: float
    rpc_timeout_seconds: float
    reconnect_backoff_initial_seconds: float
    reconnect_backoff_max_seconds: float
    log_level: str
    vault_abi_path: str | None = None


_REQUIRED_KEYS: tuple[str, ...] = (
    "LEDGER_RPC_URL",
    "VAULT_CONTRACT_ADDRESS",
    "DATABASE_URL",
)


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}, got {value}")
    return value


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value for {name}: {raw}") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be > 0, got {value}")
    return value


def load_mirror_config() -> MirrorConfig:
    """Load and validate mirror configuration from environment."""
    for key in _REQUIRED_KEYS:
        _read_env(key)

    contract_address = _read_env("VAULT_CONTRACT_ADDRESS")
    if not _ADDRESS_RE.match(contract_address):
        raise RuntimeError(f"VAULT_CONTRACT_ADDRESS is not a 20-byte hex address: {contract_address}")

    backoff_initial = _read_float("RECONNECT_BACKOFF_INITIAL_SECONDS", 1.0)
    backoff_max = _read_float("RECONNECT_BACKOFF_MAX_SECONDS", 60.0)
    if backoff_max < backoff_initial:
        raise RuntimeError("RECONNECT_BACKOFF_MAX_SECONDS must be >= RECONNECT_BACKOFF_INITIAL_SECONDS")

    abi_path = os.getenv("VAULT_ABI_PATH", "").strip() or None
    if abi_path is not None and not os.path.isfile(abi_path):
        raise RuntimeError(f"VAULT_ABI_PATH does not point to a file: {abi_path}")

    log_level = os.getenv("MIRROR_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in _LOG_LEVELS:
        raise RuntimeError(f"Invalid MIRROR_LOG_LEVEL: {log_level}")

    return MirrorConfig(
        ledger_rpc_url=_read_env("LEDGER_RPC_URL"),
        vault_contract_address=contract_address.lower(),
        database_url=_read_env("DATABASE_URL"),
        start_block=_read_int("LEDGER_START_BLOCK", 0),
        confirmations=_read_int("LEDGER_CONFIRMATIONS", 0),
        log_batch_blocks=_read_int("LEDGER_LOG_BATCH_BLOCKS", 2000, minimum=1),
        sweep_window_blocks=_read_int("LEDGER_SWEEP_WINDOW_BLOCKS", 10000, minimum=1),
        poll_interval_seconds=_read_float("LEDGER_POLL_INTERVAL_SECONDS", 4.0),
        stall_timeout_seconds=_read_float("LEDGER_STALL_TIMEOUT_SECONDS", 120.0),
        rpc_timeout_seconds=_read_float("LEDGER_RPC_TIMEOUT_SECONDS", 20.0),
        reconnect_backoff_initial_seconds=backoff_initial,
        reconnect_backoff_max_seconds=backoff_max,
        log_level=log_level,
        vault_abi_path=abi_path,
    )
