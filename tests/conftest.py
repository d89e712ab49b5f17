from __future__ import annotations

import copy
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import keyring
import keyring.backend
import pytest
import rlp
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_keys import keys
from eth_utils import event_abi_to_log_topic, function_abi_to_4byte_selector
from hexbytes import HexBytes
from web3 import Web3
from web3.providers.base import BaseProvider


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from openst import abi as abi_module  # noqa: E402
from openst import core  # noqa: E402
from openst.abi import AbiBinProvider, ContractName  # noqa: E402
from openst.core import AppContext, ChainConfig  # noqa: E402
from openst.safe import GnosisSafe, SafeTransaction, build_safe_tx_data, sign_safe_transaction  # noqa: E402

CHAIN_ID = 1000
DEPLOYER = Web3.to_checksum_address("0x" + "d0" * 20)
ZERO = "0x0000000000000000000000000000000000000000"
SENTINEL = "0x0000000000000000000000000000000000000001"

_SAFE_TX_TYPEHASH = bytes(
    Web3.keccak(
        text=(
            "SafeTx(address to,uint256 value,bytes data,uint8 operation,uint256 safeTxGas,"
            "uint256 baseGas,uint256 gasPrice,address gasToken,address refundReceiver,uint256 nonce)"
        )
    )
)
_DOMAIN_TYPEHASH = bytes(Web3.keccak(text="EIP712Domain(address verifyingContract)"))


class MemoryKeyring(keyring.backend.KeyringBackend):
    priority = 1

    def __init__(self) -> None:
        self._data: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self._data.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self._data[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        self._data.pop((service, username), None)


class Revert(Exception):
    """Raised inside the fake chain when a contract call would revert."""


class Rejected(Exception):
    """Raised when the fake node refuses a request outright."""


def _addr(value: Any) -> str:
    return Web3.to_checksum_address(value)


def contract_safe_tx_hash(
    safe: str,
    to: str,
    value: int,
    data: bytes,
    operation: int,
    safe_tx_gas: int,
    base_gas: int,
    gas_price: int,
    gas_token: str,
    refund_receiver: str,
    nonce: int,
) -> bytes:
    """Safe transaction digest as ``GnosisSafe.getTransactionHash`` computes it."""

    domain = bytes(Web3.keccak(abi_encode(["bytes32", "address"], [_DOMAIN_TYPEHASH, _addr(safe)])))
    struct = bytes(
        Web3.keccak(
            abi_encode(
                ["bytes32", "address", "uint256", "bytes32", "uint8", "uint256", "uint256", "uint256", "address", "address", "uint256"],
                [
                    _SAFE_TX_TYPEHASH,
                    _addr(to),
                    value,
                    bytes(Web3.keccak(bytes(data))),
                    operation,
                    safe_tx_gas,
                    base_gas,
                    gas_price,
                    _addr(gas_token),
                    _addr(refund_receiver),
                    nonce,
                ],
            )
        )
    )
    return bytes(Web3.keccak(b"\x19\x01" + domain + struct))


class FakeChain(BaseProvider):
    """In-memory node emulating the wallet contracts closely enough for the SDK.

    Safes keep their owners head first, the order ``getOwners`` returns.
    Every request is recorded in ``requests``.
    """

    def __init__(self, abi_provider: AbiBinProvider) -> None:
        super().__init__()
        self.requests: List[Tuple[str, Any]] = []
        self.chain_id = CHAIN_ID
        self.block_number = 1
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.account_nonces: Dict[str, int] = {}
        self.raw_transactions: List[bytes] = []
        self.safes: Dict[str, Dict[str, Any]] = {}
        self.token_holders: Dict[str, Dict[str, Any]] = {}
        self.user_wallet_factories: set = set()
        self.proxy_factories: set = set()
        self.reject_sends = False
        self.fail_estimates = False
        self.foreign_logs: List[Dict[str, Any]] = []
        self._created = 0
        self._functions: Dict[bytes, Dict[str, Any]] = {}
        self._events: Dict[str, Dict[str, Any]] = {}
        for name in (
            ContractName.GNOSIS_SAFE,
            ContractName.TOKEN_HOLDER,
            ContractName.USER_WALLET_FACTORY,
            ContractName.PROXY_FACTORY,
        ):
            for entry in abi_provider.get_abi(name):
                if entry["type"] == "function":
                    self._functions[bytes(function_abi_to_4byte_selector(entry))] = entry
                elif entry["type"] == "event":
                    self._events[entry["name"]] = entry

    # -- provider ---------------------------------------------------------
    def is_connected(self, show_traceback: bool = False) -> bool:
        return True

    def make_request(self, method: Any, params: Any) -> Dict[str, Any]:
        self.requests.append((str(method), params))
        handler = getattr(self, f"_rpc_{method}", None)
        if handler is None:
            return {"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": f"unsupported method {method}"}}
        try:
            result = handler(*params)
        except (Rejected, Revert) as exc:
            return {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": str(exc)}}
        return {"jsonrpc": "2.0", "id": 1, "result": result}

    def methods(self) -> List[str]:
        return [method for method, _ in self.requests]

    # -- seeding ----------------------------------------------------------
    def _new_address(self, label: str) -> str:
        self._created += 1
        return _addr(bytes(Web3.keccak(text=f"{label}-{self._created}"))[12:])

    def add_user_wallet_factory(self) -> str:
        address = self._new_address("user-wallet-factory")
        self.user_wallet_factories.add(address)
        return address

    def add_proxy_factory(self) -> str:
        address = self._new_address("proxy-factory")
        self.proxy_factories.add(address)
        return address

    def deploy_safe(self, owners: Sequence[str], threshold: int) -> str:
        checked = [_addr(owner) for owner in owners]
        if not checked or len(set(checked)) != len(checked) or not 1 <= threshold <= len(checked):
            raise Revert("invalid safe setup")
        address = self._new_address("safe")
        self.safes[address] = {"owners": checked, "threshold": int(threshold), "nonce": 0}
        return address

    def deploy_token_holder(
        self,
        token: str,
        token_rules: str,
        owner: str,
        session_keys: Sequence[str],
        limits: Sequence[int],
        heights: Sequence[int],
    ) -> str:
        if not len(session_keys) == len(limits) == len(heights):
            raise Revert("session key arrays differ in length")
        address = self._new_address("token-holder")
        self.token_holders[address] = {
            "owner": _addr(owner),
            "token": _addr(token),
            "tokenRules": _addr(token_rules),
            "sessions": {
                _addr(key): {"spendingLimit": limit, "expirationHeight": height, "nonce": 0, "status": 1}
                for key, limit, height in zip(session_keys, limits, heights)
            },
        }
        return address

    # -- rpc --------------------------------------------------------------
    def _rpc_eth_chainId(self) -> str:
        return hex(self.chain_id)

    def _rpc_eth_gasPrice(self) -> str:
        return hex(10**9)

    def _rpc_eth_blockNumber(self) -> str:
        return hex(self.block_number)

    def _rpc_eth_getBlockByNumber(self, tag: Any, full: bool = False) -> Optional[Dict[str, Any]]:
        if tag in ("latest", "pending", "safe", "finalized"):
            number = self.block_number
        elif tag == "earliest":
            number = 0
        else:
            number = int(tag, 16) if isinstance(tag, str) else int(tag)
        if number > self.block_number:
            return None
        return {
            "number": hex(number),
            "hash": Web3.keccak(text=f"block-{number}").to_0x_hex(),
            "parentHash": Web3.keccak(text=f"block-{number - 1}").to_0x_hex(),
            "gasLimit": hex(30_000_000),
            "gasUsed": "0x0",
            "timestamp": hex(1_700_000_000 + number * 12),
            "extraData": "0x",
            "transactions": [],
        }

    def _rpc_eth_getTransactionCount(self, address: str, *_: Any) -> str:
        return hex(self.account_nonces.get(_addr(address), 0))

    def _rpc_eth_estimateGas(self, tx: Dict[str, Any], *_: Any) -> str:
        if self.fail_estimates:
            raise Rejected("gas required exceeds allowance")
        return hex(250_000)

    def _rpc_eth_call(self, tx: Dict[str, Any], *_: Any) -> str:
        entry, args = self._decode(HexBytes(tx["data"]))
        values = self._view(_addr(tx["to"]), entry["name"], args)
        return Web3.to_hex(abi_encode([output["type"] for output in entry["outputs"]], values))

    def _rpc_eth_sendTransaction(self, tx: Dict[str, Any]) -> str:
        if self.reject_sends:
            raise Rejected("insufficient funds for gas * price + value")
        return self._mine(_addr(tx["from"]), tx.get("to"), HexBytes(tx.get("data") or b""))

    def _rpc_eth_sendRawTransaction(self, raw: Any) -> str:
        if self.reject_sends:
            raise Rejected("insufficient funds for gas * price + value")
        payload = bytes(HexBytes(raw))
        self.raw_transactions.append(payload)
        fields = rlp.decode(payload)
        sender = Account.recover_transaction(payload)
        to = _addr(fields[3]) if fields[3] else None
        return self._mine(sender, to, fields[5])

    def _rpc_eth_getTransactionReceipt(self, tx_hash: Any) -> Optional[Dict[str, Any]]:
        return self.receipts.get(HexBytes(tx_hash).to_0x_hex())

    # -- execution --------------------------------------------------------
    def _decode(self, data: bytes) -> Tuple[Dict[str, Any], Tuple[Any, ...]]:
        entry = self._functions.get(bytes(data[:4]))
        if entry is None:
            raise Revert("unknown function selector")
        args = abi_decode([param["type"] for param in entry["inputs"]], bytes(data[4:]))
        return entry, tuple(args)

    def _emit(self, address: str, name: str, *values: Any) -> Dict[str, Any]:
        entry = self._events[name]
        return {
            "address": address,
            "topics": [Web3.to_hex(event_abi_to_log_topic(entry))],
            "data": Web3.to_hex(abi_encode([param["type"] for param in entry["inputs"]], list(values))),
        }

    def _mine(self, sender: str, to: Optional[str], data: bytes) -> str:
        self.account_nonces[sender] = self.account_nonces.get(sender, 0) + 1
        self.block_number += 1
        tx_hash = Web3.keccak(text=f"tx-{len(self.receipts)}").to_0x_hex()
        block_hash = Web3.keccak(text=f"block-{self.block_number}").to_0x_hex()
        snapshot = copy.deepcopy((self.safes, self.token_holders))
        try:
            logs = self._apply(sender, _addr(to) if to else None, bytes(data))
            status = 1
        except Revert:
            self.safes, self.token_holders = snapshot
            logs, status = [], 0
        if status:
            logs = [*logs, *self.foreign_logs]
        receipt: Dict[str, Any] = {
            "transactionHash": tx_hash,
            "transactionIndex": "0x0",
            "blockHash": block_hash,
            "blockNumber": hex(self.block_number),
            "from": sender,
            "cumulativeGasUsed": hex(90_000),
            "gasUsed": hex(90_000),
            "contractAddress": None,
            "status": hex(status),
            "logs": [
                {
                    **log,
                    "logIndex": hex(index),
                    "transactionIndex": "0x0",
                    "transactionHash": tx_hash,
                    "blockHash": block_hash,
                    "blockNumber": hex(self.block_number),
                }
                for index, log in enumerate(logs)
            ],
        }
        if to:
            receipt["to"] = _addr(to)
        self.receipts[tx_hash] = receipt
        return tx_hash

    def _apply(self, sender: str, to: Optional[str], data: bytes) -> List[Dict[str, Any]]:
        if to is None or not data:
            return []
        entry, args = self._decode(data)
        name = entry["name"]
        if to in self.user_wallet_factories and name == "createUserWallet":
            return self._create_user_wallet(to, *args)
        if to in self.proxy_factories and name == "createProxy":
            return self._create_proxy(to, *args)
        if to in self.safes and name == "execTransaction":
            return self._exec_transaction(to, *args)
        raise Revert(f"{name} is not callable on {to}")

    def _create_user_wallet(
        self,
        factory: str,
        safe_master: str,
        safe_data: bytes,
        holder_master: str,
        token: str,
        token_rules: str,
        session_keys: Sequence[str],
        limits: Sequence[int],
        heights: Sequence[int],
    ) -> List[Dict[str, Any]]:
        entry, (owners, threshold, _to, _data) = self._decode(safe_data)
        if entry["name"] != "setup":
            raise Revert("safe data is not a setup call")
        safe = self.deploy_safe(owners, threshold)
        holder = self.deploy_token_holder(token, token_rules, safe, session_keys, limits, heights)
        return [self._emit(factory, "UserWalletCreated", safe, holder)]

    def _create_proxy(self, factory: str, master_copy: str, data: bytes) -> List[Dict[str, Any]]:
        entry, args = self._decode(data)
        if entry["name"] != "setup" or len(args) != 6:
            raise Revert("proxy data is not a TokenHolder setup call")
        holder = self.deploy_token_holder(*args)
        return [self._emit(factory, "ProxyCreated", holder)]

    def _exec_transaction(
        self,
        safe: str,
        to: str,
        value: int,
        data: bytes,
        operation: int,
        safe_tx_gas: int,
        base_gas: int,
        gas_price: int,
        gas_token: str,
        refund_receiver: str,
        signatures: bytes,
    ) -> List[Dict[str, Any]]:
        state = self.safes[safe]
        digest = contract_safe_tx_hash(
            safe, to, value, data, operation, safe_tx_gas, base_gas, gas_price, gas_token, refund_receiver, state["nonce"]
        )
        state["nonce"] += 1
        self._check_signatures(state, digest, signatures)
        snapshot = copy.deepcopy((self.safes, self.token_holders))
        try:
            logs = self._call_from(safe, _addr(to), data)
        except Revert:
            if safe_tx_gas == 0 and gas_price == 0:
                raise
            self.safes, self.token_holders = snapshot
            return [self._emit(safe, "ExecutionFailure", digest, 0)]
        return logs + [self._emit(safe, "ExecutionSuccess", digest, 0)]

    @staticmethod
    def _check_signatures(state: Dict[str, Any], digest: bytes, signatures: bytes) -> None:
        threshold = state["threshold"]
        if len(signatures) < threshold * 65:
            raise Revert("signatures data too short")
        last = 0
        for index in range(threshold):
            chunk = signatures[index * 65 : (index + 1) * 65]
            v = chunk[64]
            if v not in (27, 28):
                raise Revert("unsupported signature type")
            try:
                signature = keys.Signature(
                    vrs=(v - 27, int.from_bytes(chunk[:32], "big"), int.from_bytes(chunk[32:64], "big"))
                )
                signer = signature.recover_public_key_from_msg_hash(digest).to_checksum_address()
            except Exception as exc:
                raise Revert("invalid signature") from exc
            if signer not in state["owners"] or int(signer, 16) <= last:
                raise Revert("invalid owner provided")
            last = int(signer, 16)

    def _call_from(self, caller: str, to: str, data: bytes) -> List[Dict[str, Any]]:
        entry, args = self._decode(data)
        name = entry["name"]
        if to == caller and to in self.safes:
            return self._manage_owners(to, name, args)
        holder = self.token_holders.get(to)
        if holder is not None:
            if holder["owner"] != caller:
                raise Revert("only the owner can call")
            return self._manage_sessions(to, holder, name, args)
        raise Revert("call target is not a known contract")

    @staticmethod
    def _previous(owners: List[str], owner: str) -> Optional[str]:
        if owner not in owners:
            return None
        index = owners.index(owner)
        return SENTINEL if index == 0 else owners[index - 1]

    def _change_threshold(self, safe: str, threshold: int) -> List[Dict[str, Any]]:
        state = self.safes[safe]
        if not 1 <= threshold <= len(state["owners"]):
            raise Revert("threshold out of range")
        state["threshold"] = threshold
        return [self._emit(safe, "ChangedThreshold", threshold)]

    def _manage_owners(self, safe: str, name: str, args: Tuple[Any, ...]) -> List[Dict[str, Any]]:
        state = self.safes[safe]
        owners: List[str] = state["owners"]
        if name == "addOwnerWithThreshold":
            owner, threshold = _addr(args[0]), args[1]
            if owner in owners or owner in (ZERO, SENTINEL):
                raise Revert("invalid owner")
            owners.insert(0, owner)
            logs = [self._emit(safe, "AddedOwner", owner)]
            if threshold != state["threshold"]:
                logs += self._change_threshold(safe, threshold)
            return logs
        if name == "removeOwner":
            previous, owner, threshold = _addr(args[0]), _addr(args[1]), args[2]
            if len(owners) - 1 < threshold:
                raise Revert("threshold cannot exceed owner count")
            if self._previous(owners, owner) != previous:
                raise Revert("invalid prevOwner, owner pair")
            owners.remove(owner)
            logs = [self._emit(safe, "RemovedOwner", owner)]
            if threshold != state["threshold"]:
                logs += self._change_threshold(safe, threshold)
            return logs
        if name == "swapOwner":
            previous, old, new = _addr(args[0]), _addr(args[1]), _addr(args[2])
            if new in owners or new in (ZERO, SENTINEL):
                raise Revert("invalid new owner")
            if self._previous(owners, old) != previous:
                raise Revert("invalid prevOwner, owner pair")
            owners[owners.index(old)] = new
            return [self._emit(safe, "RemovedOwner", old), self._emit(safe, "AddedOwner", new)]
        if name == "changeThreshold":
            return self._change_threshold(safe, args[0])
        raise Revert(f"{name} is not an owner management call")

    def _manage_sessions(
        self, address: str, holder: Dict[str, Any], name: str, args: Tuple[Any, ...]
    ) -> List[Dict[str, Any]]:
        sessions = holder["sessions"]
        if name == "authorizeSession":
            key, limit, height = _addr(args[0]), args[1], args[2]
            if key in sessions or height <= self.block_number:
                raise Revert("session key cannot be authorized")
            sessions[key] = {"spendingLimit": limit, "expirationHeight": height, "nonce": 0, "status": 1}
            return [self._emit(address, "SessionAuthorized", key, limit, height)]
        if name == "revokeSession":
            key = _addr(args[0])
            session = sessions.get(key)
            if session is None or session["status"] != 1:
                raise Revert("session key is not authorized")
            session["status"] = 2
            return [self._emit(address, "SessionRevoked", key)]
        raise Revert(f"{name} is not a session management call")

    def _view(self, to: str, name: str, args: Tuple[Any, ...]) -> List[Any]:
        if to in self.safes:
            state = self.safes[to]
            if name == "nonce":
                return [state["nonce"]]
            if name == "getOwners":
                return [list(state["owners"])]
            if name == "getThreshold":
                return [state["threshold"]]
            if name == "isOwner":
                return [_addr(args[0]) in state["owners"]]
            if name == "getTransactionHash":
                return [contract_safe_tx_hash(to, *args)]
        holder = self.token_holders.get(to)
        if holder is not None:
            if name in ("owner", "token", "tokenRules"):
                return [holder[name]]
            if name == "sessionKeys":
                session = holder["sessions"].get(_addr(args[0]))
                if session is None:
                    return [0, 0, 0, 0]
                return [session["spendingLimit"], session["expirationHeight"], session["nonce"], session["status"]]
        raise Revert(f"no view {name} on {to}")


@pytest.fixture()
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("OPENST_STATE_DIR", str(tmp_path))
    monkeypatch.delenv("OPENST_AUDIT_HMAC_KEY", raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(core, "_CONTEXT", None)
    monkeypatch.setattr(abi_module, "_DEFAULT_PROVIDER", None)
    keyring.set_keyring(MemoryKeyring())
    return tmp_path


@pytest.fixture()
def abi_provider() -> AbiBinProvider:
    return AbiBinProvider()


@pytest.fixture()
def chain(abi_provider: AbiBinProvider) -> FakeChain:
    return FakeChain(abi_provider)


@pytest.fixture()
def web3(chain: FakeChain) -> Web3:
    return Web3(chain)


@pytest.fixture()
def context(isolated_home: Path, web3: Web3) -> AppContext:
    return core.initialise_context(ChainConfig(chain_id=CHAIN_ID, deployer_address=DEPLOYER), web3=web3)


@pytest.fixture()
def accounts() -> List[Any]:
    return [Account.from_key("0x" + f"{index:064x}") for index in range(1, 11)]


@pytest.fixture()
def execute():
    """Sign a safe transaction with ``signers`` and execute it through the deployer."""

    def _execute(
        safe: GnosisSafe,
        to: str,
        data: str,
        signers: Sequence[Any],
        *,
        nonce: Optional[int] = None,
        safe_tx_gas: int = 0,
    ):
        current = safe.get_nonce() if nonce is None else nonce
        safe_tx = SafeTransaction.create(to, 0, data, 0, safe_tx_gas, nonce=current)
        typed_data = build_safe_tx_data(safe.address, safe_tx)
        signatures = {account.address: sign_safe_transaction(typed_data, account) for account in signers}
        return safe.exec_safe_transaction(safe_tx, signatures)

    return _execute
