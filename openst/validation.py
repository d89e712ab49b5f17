"""Argument checks performed before any call reaches the node."""

from __future__ import annotations

from typing import Any, List, Sequence, Union

from hexbytes import HexBytes
from web3 import Web3

from .errors import ValidationError

UINT256_MAX = 2**256 - 1

BytesLike = Union[bytes, str]


def checksum(value: Any, field: str) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValidationError("malformed address", context={"field": field, "value": value})
    return Web3.to_checksum_address(value)


def _sequence(values: Any, field: str) -> List[Any]:
    if not isinstance(values, (list, tuple)):
        raise ValidationError("expected a list", context={"field": field, "type": type(values).__name__})
    return list(values)


def checksum_list(values: Sequence[Any], field: str) -> List[str]:
    return [checksum(value, f"{field}[{index}]") for index, value in enumerate(_sequence(values, field))]


def uint(value: Any, field: str, *, bits: int = 256) -> int:
    if isinstance(value, bool):
        raise ValidationError("expected an unsigned integer", context={"field": field, "value": value})
    if isinstance(value, str):
        text = value.strip()
        try:
            value = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            raise ValidationError("expected an unsigned integer", context={"field": field, "value": value}) from None
    if not isinstance(value, int):
        raise ValidationError("expected an unsigned integer", context={"field": field, "value": value})
    if value < 0 or value > 2**bits - 1:
        raise ValidationError(f"value out of uint{bits} range", context={"field": field, "value": value})
    return value


def uint_list(values: Sequence[Any], field: str) -> List[int]:
    return [uint(value, f"{field}[{index}]") for index, value in enumerate(_sequence(values, field))]


def data_bytes(value: BytesLike, field: str) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value.strip()
        if text in ("", "0x"):
            return b""
        try:
            return bytes(HexBytes(text))
        except ValueError:
            raise ValidationError("expected hex encoded bytes", context={"field": field, "value": value}) from None
    raise ValidationError("expected bytes or a hex string", context={"field": field, "value": value})


def session_key_triples(
    session_keys: Sequence[Any],
    spending_limits: Sequence[Any],
    expiration_heights: Sequence[Any],
) -> tuple[List[str], List[int], List[int]]:
    """Validate the parallel session key arrays and normalise their members."""

    session_keys = _sequence(session_keys, "sessionKeys")
    spending_limits = _sequence(spending_limits, "sessionKeysSpendingLimits")
    expiration_heights = _sequence(expiration_heights, "sessionKeysExpirationHeights")
    lengths = {
        "sessionKeys": len(session_keys),
        "sessionKeysSpendingLimits": len(spending_limits),
        "sessionKeysExpirationHeights": len(expiration_heights),
    }
    if len(set(lengths.values())) != 1:
        raise ValidationError("session key arrays differ in length", context=lengths)
    keys = checksum_list(session_keys, "sessionKeys")
    if len({key.lower() for key in keys}) != len(keys):
        raise ValidationError("duplicate session key", context={"sessionKeys": keys})
    return (
        keys,
        uint_list(spending_limits, "sessionKeysSpendingLimits"),
        uint_list(expiration_heights, "sessionKeysExpirationHeights"),
    )


def owners_and_threshold(owners: Sequence[Any], threshold: Any) -> tuple[List[str], int]:
    checked = checksum_list(owners, "owners")
    if not checked:
        raise ValidationError("at least one owner is required")
    if len({owner.lower() for owner in checked}) != len(checked):
        raise ValidationError("duplicate owner", context={"owners": checked})
    value = uint(threshold, "threshold")
    if not 1 <= value <= len(checked):
        raise ValidationError(
            "threshold must be between 1 and the number of owners",
            context={"threshold": value, "owners": len(checked)},
        )
    return checked, value


__all__ = [
    "UINT256_MAX",
    "checksum",
    "checksum_list",
    "data_bytes",
    "owners_and_threshold",
    "session_key_triples",
    "uint",
    "uint_list",
]
