"""Decode contract events from receipt logs into plain dictionaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes
from web3 import Web3

from .errors import RevertError

_DYNAMIC_SUFFIXES = ("[]", "]")


@dataclass(frozen=True)
class DecodedEvent:
    """A single decoded log entry."""

    name: str
    address: Optional[str]
    args: Dict[str, Any] = field(default_factory=dict)
    log_index: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "address": self.address, "args": dict(self.args), "logIndex": self.log_index}


def _is_hashed_when_indexed(abi_type: str) -> bool:
    return abi_type in ("string", "bytes") or abi_type.endswith(_DYNAMIC_SUFFIXES) or abi_type.startswith("tuple")


def _plain(value: Any, abi_type: str) -> Any:
    if abi_type == "address":
        return Web3.to_checksum_address(value)
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    if isinstance(value, (list, tuple)):
        inner = abi_type[: abi_type.rfind("[")] if abi_type.endswith("]") else ""
        return [_plain(item, inner) for item in value]
    return value


def _field(log: Any, key: str) -> Any:
    if isinstance(log, Mapping):
        return log.get(key)
    return getattr(log, key, None)


class EventDecoder:
    """Index event ABIs by topic and decode matching logs.

    ``decode_log`` returns ``None`` for logs whose first topic does not
    match any known event (for example a token transfer emitted by a
    contract whose ABI was not supplied), and for logs that share a known
    topic but not its layout, such as an ERC721 ``Transfer`` that indexes
    all three arguments.
    """

    def __init__(self, abis: Iterable[Dict[str, Any]]) -> None:
        self._events: Dict[bytes, Dict[str, Any]] = {}
        for entry in abis:
            if entry.get("type") != "event" or entry.get("anonymous"):
                continue
            self._events[bytes(event_abi_to_log_topic(entry))] = entry

    def decode_log(self, log: Any) -> Optional[DecodedEvent]:
        topics = [HexBytes(topic) for topic in (_field(log, "topics") or [])]
        if not topics:
            return None
        entry = self._events.get(bytes(topics[0]))
        if entry is None:
            return None
        inputs = entry.get("inputs", [])
        indexed = [param for param in inputs if param.get("indexed")]
        plain = [param for param in inputs if not param.get("indexed")]
        if len(topics) != 1 + len(indexed):
            return None
        try:
            args = self._decode_args(indexed, plain, topics[1:], HexBytes(_field(log, "data") or b""))
        except DecodingError:
            return None
        ordered = {param["name"]: args[param["name"]] for param in inputs if param["name"] in args}
        address = _field(log, "address")
        log_index = _field(log, "logIndex")
        return DecodedEvent(
            name=str(entry["name"]),
            address=Web3.to_checksum_address(address) if address else None,
            args=ordered,
            log_index=int(log_index, 16) if isinstance(log_index, str) else log_index,
        )

    @staticmethod
    def _decode_args(
        indexed: Sequence[Dict[str, Any]], plain: Sequence[Dict[str, Any]], topics: Sequence[HexBytes], data: bytes
    ) -> Dict[str, Any]:
        args: Dict[str, Any] = {}
        for param, topic in zip(indexed, topics):
            abi_type = str(param["type"])
            if _is_hashed_when_indexed(abi_type):
                args[param["name"]] = Web3.to_hex(topic)
            else:
                (value,) = abi_decode([abi_type], bytes(topic))
                args[param["name"]] = _plain(value, abi_type)
        if plain:
            values = abi_decode([str(param["type"]) for param in plain], bytes(data))
            for param, value in zip(plain, values):
                args[param["name"]] = _plain(value, str(param["type"]))
        return args

    def decode_logs(self, logs: Sequence[Any]) -> List[DecodedEvent]:
        decoded: List[DecodedEvent] = []
        for log in logs:
            event = self.decode_log(log)
            if event is not None:
                decoded.append(event)
        return decoded

    def events_by_name(self, logs: Sequence[Any]) -> Dict[str, List[Dict[str, Any]]]:
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for event in self.decode_logs(logs):
            grouped.setdefault(event.name, []).append(event.args)
        return grouped


def require_event(receipt: Any, name: str) -> Dict[str, Any]:
    """Return the arguments of the first ``name`` event on ``receipt``.

    Raises :class:`RevertError` when the event is absent, which for the
    wallet contracts means the intended state change did not happen.
    """

    found = receipt.events.get(name) or []
    if not found:
        raise RevertError(
            "expected event missing from receipt",
            receipt=receipt,
            context={"event": name, "tx": receipt.transaction_hash},
        )
    return found[0]


__all__ = ["DecodedEvent", "EventDecoder", "require_event"]
