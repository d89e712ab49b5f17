"""Core runtime primitives: configuration, forensic ledger, secrets and web3."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import stat
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import keyring
from dotenv import load_dotenv
from keyring.errors import KeyringError
from web3 import Web3

from .errors import ValidationError
from .utils.paths import state_dir

LOG_FILE_NAME = "openst.log"
LEDGER_FILE_NAME = "openst_audit.jsonl"
SERVICE_ENV_VAR = "OPENST_KEYRING_SERVICE"
HMAC_KEY_ENV = "OPENST_AUDIT_HMAC_KEY"
DEFAULT_SERVICE = "openst"
TESTER_RPC = "tester"

DEFAULT_RPC_URL = "http://127.0.0.1:8545"
DEFAULT_NETWORK_ID = 1000
DEFAULT_GAS_PRICE = 0x3B9ACA00
DEFAULT_GAS_LIMIT = 8_000_000
DEFAULT_RPC_TIMEOUT = 10
DEFAULT_RECEIPT_TIMEOUT = 120


def _ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def _ensure_file_permissions(path: Path) -> None:
    try:
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except OSError:  # pragma: no cover - permission handling best effort
        return


# -- configuration -----------------------------------------------------------
def _parse_int(raw: Optional[str], key: str, default: Optional[int]) -> Optional[int]:
    if raw is None or not raw.strip():
        return default
    text = raw.strip()
    try:
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    except ValueError as exc:
        raise ValidationError("configuration value must be an integer", context={"key": key, "value": raw}) from exc


@dataclass(frozen=True)
class ChainConfig:
    """Connection and gas settings supplied by the caller's environment."""

    rpc_url: str = DEFAULT_RPC_URL
    # None: local signing uses the chain id reported by the node.
    chain_id: Optional[int] = None
    network_id: int = DEFAULT_NETWORK_ID
    gas_price: int = DEFAULT_GAS_PRICE
    gas_limit: int = DEFAULT_GAS_LIMIT
    deployer_address: Optional[str] = None
    rpc_timeout: int = DEFAULT_RPC_TIMEOUT
    receipt_timeout: int = DEFAULT_RECEIPT_TIMEOUT
    artifacts_dir: Optional[Path] = None

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "ChainConfig":
        deployer = values.get("DEPLOYER_ADDRESS") or None
        if deployer is not None:
            if not Web3.is_address(deployer):
                raise ValidationError("DEPLOYER_ADDRESS is not a valid address", context={"value": deployer})
            deployer = Web3.to_checksum_address(deployer)
        artifacts = values.get("OPENST_ARTIFACTS_DIR") or None
        return cls(
            rpc_url=values.get("RPC_URL") or DEFAULT_RPC_URL,
            chain_id=_parse_int(values.get("CHAIN_ID"), "CHAIN_ID", None),
            network_id=_parse_int(values.get("NETWORK_ID"), "NETWORK_ID", DEFAULT_NETWORK_ID),
            gas_price=_parse_int(values.get("GAS_PRICE"), "GAS_PRICE", DEFAULT_GAS_PRICE),
            gas_limit=_parse_int(values.get("GAS_LIMIT"), "GAS_LIMIT", DEFAULT_GAS_LIMIT),
            deployer_address=deployer,
            rpc_timeout=_parse_int(values.get("RPC_TIMEOUT"), "RPC_TIMEOUT", DEFAULT_RPC_TIMEOUT),
            receipt_timeout=_parse_int(values.get("RECEIPT_TIMEOUT"), "RECEIPT_TIMEOUT", DEFAULT_RECEIPT_TIMEOUT),
            artifacts_dir=Path(artifacts).expanduser() if artifacts else None,
        )


def load_config(env_path: Optional[Path] = None) -> ChainConfig:
    """Load ``.env`` (without overriding the process environment) and build a config."""

    load_dotenv(env_path or Path(".env"), override=False)
    return ChainConfig.from_mapping(os.environ)


# -- forensic ledger ---------------------------------------------------------
class ForensicLedger:
    """Append-only forensic log with hash chaining and optional HMAC."""

    def __init__(self, path: Optional[Path] = None, hmac_key_env: str = HMAC_KEY_ENV) -> None:
        self.path = path or state_dir() / "logs" / LEDGER_FILE_NAME
        self.hmac_key_env = hmac_key_env
        _ensure_directory(self.path.parent)
        self.path.touch(exist_ok=True)
        _ensure_file_permissions(self.path)

    def _load_last_hash(self) -> str:
        try:
            with self.path.open("rb") as handle:
                handle.seek(0, os.SEEK_END)
                size = handle.tell()
                if size == 0:
                    return ""
                step = min(4096, size)
                position = size
                buffer = b""
                while position > 0:
                    position = max(0, position - step)
                    handle.seek(position)
                    buffer = handle.read(size - position)
                    if buffer.count(b"\n") > 1 or position == 0:
                        break
                line = buffer.splitlines()[-1]
            payload = json.loads(line.decode("utf-8"))
            return str(payload.get("hash", ""))
        except (OSError, ValueError, IndexError):
            return ""

    def _hmac_key(self) -> Optional[bytes]:
        service = os.getenv(SERVICE_ENV_VAR, DEFAULT_SERVICE)
        secret: Optional[str] = None
        try:
            secret = keyring.get_password(service, self.hmac_key_env)
        except KeyringError:
            secret = None
        if not secret:
            secret = os.getenv(self.hmac_key_env)
        return secret.encode("utf-8") if secret else None

    def log(
        self,
        action: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        result: Optional[Dict[str, Any]] = None,
        ok: bool = True,
        severity: str = "INFO",
    ) -> Dict[str, Any]:
        """Append a forensic record and return the serialised payload."""

        record = {
            "ts": time.time(),
            "action": action,
            "params": params or {},
            "result": result or {},
            "ok": bool(ok),
            "severity": severity.upper(),
        }
        envelope = json.loads(json.dumps({"prev": self._load_last_hash(), **record}, default=str))
        digest_input = json.dumps(envelope, sort_keys=True, separators=(",", ":")).encode("utf-8")
        envelope["hash"] = hashlib.sha256(digest_input).hexdigest()
        hmac_key = self._hmac_key()
        if hmac_key:
            hmac_input = json.dumps(envelope, sort_keys=True, separators=(",", ":")).encode("utf-8")
            envelope["hmac"] = hmac.new(hmac_key, hmac_input, hashlib.sha256).hexdigest()
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(envelope, ensure_ascii=False) + "\n")
        return envelope


# -- secrets -----------------------------------------------------------------
class SecretStore:
    """Signer secret resolution with keyring-first semantics."""

    def __init__(
        self,
        ledger: ForensicLedger,
        *,
        service_name: Optional[str] = None,
        backend: Optional[Any] = None,
    ) -> None:
        self.ledger = ledger
        self.service_name = service_name or os.getenv(SERVICE_ENV_VAR, DEFAULT_SERVICE)
        self.backend = backend if backend is not None else keyring

    @staticmethod
    def _preview(value: str) -> str:
        if len(value) <= 4:
            return "*" * len(value)
        return value[:2] + "*" * (len(value) - 4) + value[-2:]

    def _from_keyring(self, key: str) -> Optional[str]:
        try:
            return self.backend.get_password(self.service_name, key)
        except KeyringError:
            return None

    def get(self, key: str) -> Optional[str]:
        value = self._from_keyring(key)
        source = "keyring"
        if not value:
            value = os.getenv(key)
            source = "env"
        if value:
            self.ledger.log(
                "secret_get",
                params={"key": key, "source": source},
                result={"preview": self._preview(value)},
            )
            return value
        self.ledger.log("secret_missing", params={"key": key}, ok=False, severity="WARNING")
        return None

    def require(self, key: str) -> str:
        value = self.get(key)
        if value is None:
            raise ValidationError("missing required secret", context={"key": key})
        return value

    def set(self, key: str, value: str) -> None:
        value = value.strip()
        if not value:
            raise ValidationError("secret value must not be empty", context={"key": key})
        try:
            self.backend.set_password(self.service_name, key, value)
        except KeyringError as exc:
            raise ValidationError("keyring backend refused the secret", context={"key": key}) from exc
        self.ledger.log(
            "secret_set",
            params={"key": key},
            result={"preview": self._preview(value)},
        )

    def delete(self, key: str) -> None:
        try:
            self.backend.delete_password(self.service_name, key)
        except KeyringError as exc:
            self.ledger.log("secret_delete", params={"key": key}, ok=False, result={"error": str(exc)})
            return
        self.ledger.log("secret_delete", params={"key": key})


# -- context -----------------------------------------------------------------
@dataclass
class AppContext:
    """Container exposing the shared runtime subsystems."""

    config: ChainConfig
    ledger: ForensicLedger
    secrets: SecretStore
    logger: logging.Logger
    _web3: Optional[Any] = field(default=None, repr=False)

    def get_web3(self, *, auto_connect: bool = True) -> Any:
        if self._web3 is None and auto_connect:
            self._web3 = self._connect_web3()
        return self._web3

    def _connect_web3(self) -> Any:
        rpc = self.config.rpc_url
        if rpc == TESTER_RPC:
            from web3.providers.eth_tester import EthereumTesterProvider

            self.ledger.log("web3_connect", params={"rpc": rpc}, result={"mode": "ethereum-tester"})
            return Web3(EthereumTesterProvider())
        w3 = Web3(Web3.HTTPProvider(rpc, request_kwargs={"timeout": self.config.rpc_timeout}))
        self.ledger.log(
            "web3_connect",
            params={"rpc": rpc},
            result={"chain_id": self.config.chain_id, "network_id": self.config.network_id},
        )
        return w3


_CONTEXT: Optional[AppContext] = None


def _configure_logger() -> logging.Logger:
    logger = logging.getLogger("openst")
    if logger.handlers:
        return logger
    log_dir = state_dir() / "logs"
    _ensure_directory(log_dir)
    formatter = logging.Formatter("%(asctime)s - openst - %(levelname)s - %(message)s")
    file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.WARNING)
    logger.setLevel(logging.INFO)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.info("Logger initialised")
    return logger


def initialise_context(
    config: Optional[ChainConfig] = None,
    *,
    web3: Optional[Any] = None,
    service_name: Optional[str] = None,
) -> AppContext:
    global _CONTEXT
    ledger = ForensicLedger()
    secrets = SecretStore(ledger, service_name=service_name)
    _CONTEXT = AppContext(
        config=config or load_config(),
        ledger=ledger,
        secrets=secrets,
        logger=_configure_logger(),
        _web3=web3,
    )
    return _CONTEXT


def get_context() -> AppContext:
    if _CONTEXT is None:
        return initialise_context()
    return _CONTEXT


__all__ = [
    "AppContext",
    "ChainConfig",
    "ForensicLedger",
    "SecretStore",
    "get_context",
    "initialise_context",
    "load_config",
]
