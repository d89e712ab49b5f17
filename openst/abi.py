"""ABI and bytecode registry for the contracts driven by openst."""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from web3 import Web3

from .core import get_context
from .errors import NotFoundError, ValidationError
from .utils.paths import artifacts_dir


class ContractName(str, Enum):
    """Contracts whose artifacts ship with the SDK."""

    GNOSIS_SAFE = "GnosisSafe"
    TOKEN_HOLDER = "TokenHolder"
    USER_WALLET_FACTORY = "UserWalletFactory"
    PROXY_FACTORY = "ProxyFactory"
    TOKEN_RULES = "TokenRules"
    EIP20_TOKEN = "EIP20Token"


NameLike = Union[ContractName, str]


def _resolve_name(name: NameLike) -> ContractName:
    if isinstance(name, ContractName):
        return name
    try:
        return ContractName(str(name).strip())
    except ValueError:
        raise NotFoundError("contract is not registered", context={"name": name}) from None


def _normalise_abi(entries: Any, source: Path) -> List[Dict[str, Any]]:
    if not isinstance(entries, list):
        raise ValidationError("ABI definition must be a list of JSON objects", context={"path": str(source)})
    normalised = [dict(entry) for entry in entries if isinstance(entry, dict)]
    if not normalised:
        raise ValidationError("ABI definition is empty or invalid", context={"path": str(source)})
    return normalised


def _normalise_bin(raw: Any) -> str:
    text = str(raw or "").strip()
    if text and not text.startswith("0x"):
        text = "0x" + text
    return text


def selector(entry: Dict[str, Any]) -> str:
    """Return the 0x-prefixed 4-byte selector for a function ABI entry."""

    types = ",".join(str(param.get("type", "")) for param in entry.get("inputs", []))
    signature = f"{entry['name']}({types})"
    return Web3.to_hex(Web3.keccak(text=signature)[:4])


class AbiBinProvider:
    """Resolve contract names to their ABI and deployable bytecode.

    Artifacts are JSON documents shaped ``{"contractName", "abi", "bin"}``.
    The bundled directory is always searched; ``extra_dir`` (typically a
    compiled build output) is searched first so it can supply bytecode the
    bundled artifacts do not carry. Artifacts are parsed once per provider
    and never mutated afterwards.
    """

    def __init__(self, extra_dir: Optional[Path] = None) -> None:
        self._search_path: List[Path] = []
        if extra_dir is not None:
            self._search_path.append(Path(extra_dir).expanduser())
        self._search_path.append(artifacts_dir())
        self._cache: Dict[ContractName, Dict[str, Any]] = {}

    def _artifact_path(self, name: ContractName) -> Path:
        for directory in self._search_path:
            candidate = directory / f"{name.value}.json"
            if candidate.exists():
                return candidate
        raise NotFoundError(
            "no artifact for contract",
            context={"name": name.value, "searched": [str(path) for path in self._search_path]},
        )

    def _load(self, name: NameLike) -> Dict[str, Any]:
        contract = _resolve_name(name)
        if contract in self._cache:
            return self._cache[contract]
        path = self._artifact_path(contract)
        payload = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(payload, list):
            payload = {"abi": payload}
        artifact = {
            "contractName": str(payload.get("contractName", contract.value)),
            "abi": _normalise_abi(payload.get("abi"), path),
            "bin": _normalise_bin(payload.get("bin") or payload.get("bytecode")),
            "source": str(path),
        }
        self._cache[contract] = artifact
        return artifact

    def get_abi(self, name: NameLike) -> List[Dict[str, Any]]:
        return list(self._load(name)["abi"])

    def get_bin(self, name: NameLike) -> str:
        """Return the 0x-prefixed creation bytecode of ``name``.

        The bundled artifacts are ABI-only, so this raises
        :class:`NotFoundError` unless ``OPENST_ARTIFACTS_DIR`` (or the
        ``extra_dir`` given to the provider) holds a compiled build with a
        ``bin`` or ``bytecode`` field.
        """

        artifact = self._load(name)
        if not artifact["bin"]:
            raise NotFoundError(
                "artifact carries no bytecode",
                context={"name": artifact["contractName"], "source": artifact["source"]},
            )
        return artifact["bin"]

    def contract_names(self) -> List[str]:
        return [name.value for name in ContractName]

    def event_abis(self, *names: NameLike) -> List[Dict[str, Any]]:
        """Event entries of the given contracts, or of every contract when none are named."""

        targets: Iterable[NameLike] = names or list(ContractName)
        events: List[Dict[str, Any]] = []
        for name in targets:
            events.extend(entry for entry in self._load(name)["abi"] if entry.get("type") == "event")
        return events

    def describe(self, name: NameLike) -> Dict[str, Any]:
        artifact = self._load(name)
        abi = artifact["abi"]
        return {
            "name": artifact["contractName"],
            "source": artifact["source"],
            "has_bytecode": bool(artifact["bin"]),
            "functions": {
                entry["name"]: selector(entry) for entry in abi if entry.get("type") == "function"
            },
            "events": sorted(entry["name"] for entry in abi if entry.get("type") == "event"),
            "errors": sum(1 for entry in abi if entry.get("type") == "error"),
        }


_DEFAULT_PROVIDER: Optional[AbiBinProvider] = None


def default_provider() -> AbiBinProvider:
    """Process-wide provider honouring ``OPENST_ARTIFACTS_DIR`` from the active config."""

    global _DEFAULT_PROVIDER
    if _DEFAULT_PROVIDER is None:
        _DEFAULT_PROVIDER = AbiBinProvider(extra_dir=get_context().config.artifacts_dir)
    return _DEFAULT_PROVIDER


__all__ = ["AbiBinProvider", "ContractName", "default_provider", "selector"]
