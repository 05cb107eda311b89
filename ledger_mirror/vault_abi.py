"""Vault contract ABI loading and event log decoding."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from eth_utils import event_abi_to_log_topic
from web3 import Web3
from web3._utils.events import get_event_data

from backend.db.enums import EventKind

logger = logging.getLogger(__name__)

EVENT_NAMES: dict[EventKind, str] = {
    EventKind.DEPOSITED: "Deposited",
    EventKind.WITHDRAW_REQUESTED: "WithdrawRequested",
}

# Leading argument types per event: user, amount[, unlockTime].
_EXPECTED_INPUT_TYPES: dict[EventKind, tuple[str, ...]] = {
    EventKind.DEPOSITED: ("address", "uint256"),
    EventKind.WITHDRAW_REQUESTED: ("address", "uint256", "uint256"),
}

DEFAULT_VAULT_ABI: list[dict[str, Any]] = [
    {
        "type": "event",
        "name": "Deposited",
        "anonymous": False,
        "inputs": [
            {"name": "user", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "WithdrawRequested",
        "anonymous": False,
        "inputs": [
            {"name": "user", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "unlockTime", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "function",
        "name": "balances",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


def extract_abi(payload: Any) -> list[dict[str, Any]]:
    """Accept a raw ABI array or a Hardhat artifact carrying an ``abi`` field."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("abi"), list):
        return payload["abi"]
    raise RuntimeError("Vault ABI must be a JSON array or an artifact with an 'abi' array")


def load_vault_abi(path: Optional[str]) -> list[dict[str, Any]]:
    if path is None:
        return DEFAULT_VAULT_ABI
    abi_path = Path(path)
    if not abi_path.is_file():
        raise RuntimeError(f"Vault ABI file not found: {path}")
    try:
        payload = json.loads(abi_path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise RuntimeError(f"Vault ABI file is not valid JSON: {path}") from exc
    logger.info("Loaded Vault ABI from %s", path)
    return extract_abi(payload)


class VaultAbi:
    """Event declarations for the mirrored kinds, resolved from a contract ABI."""

    def __init__(self, abi: Sequence[Mapping[str, Any]]) -> None:
        self._events: dict[EventKind, dict[str, Any]] = {}
        for kind, name in EVENT_NAMES.items():
            matches = [
                item for item in abi if item.get("type") == "event" and item.get("name") == name
            ]
            if len(matches) != 1:
                raise RuntimeError(f"Vault ABI must declare exactly one {name} event, found {len(matches)}")
            event_abi = dict(matches[0])
            event_abi.setdefault("anonymous", False)
            if event_abi["anonymous"]:
                raise RuntimeError(f"Vault ABI declares {name} as anonymous")
            inputs = event_abi.get("inputs") or []
            types = tuple(str(item.get("type")) for item in inputs)
            expected = _EXPECTED_INPUT_TYPES[kind]
            if types[: len(expected)] != expected:
                raise RuntimeError(f"Vault ABI {name} inputs {types} do not start with {expected}")
            if any(not item.get("name") for item in inputs):
                raise RuntimeError(f"Vault ABI {name} has unnamed inputs")
            self._events[kind] = event_abi

    def event_abi(self, kind: EventKind) -> dict[str, Any]:
        return self._events[kind]

    def topic(self, kind: EventKind) -> str:
        """0x-prefixed topic0 hash for the event."""
        return Web3.to_hex(event_abi_to_log_topic(self._events[kind]))

    def decode(self, kind: EventKind, codec: Any, log_entry: Mapping[str, Any]) -> tuple[Any, ...]:
        """Decode a normalized log into the event's arguments in declaration order.

        Indexed and non-indexed arguments are both resolved from the ABI, so
        ``user`` is found whether it travels in a topic or in ``data``.
        """
        event_abi = self._events[kind]
        decoded = get_event_data(codec, event_abi, log_entry)
        args = decoded["args"]
        return tuple(args[item["name"]] for item in event_abi["inputs"])
