"""Gnosis Safe transaction codec and owner management facade."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from .abi import AbiBinProvider, ContractName, default_provider
from .core import AppContext, get_context
from .errors import RevertError, ValidationError
from .tx import Signer, TransactionReceipt, TxOptions, TxSender
from .validation import BytesLike, checksum, data_bytes, uint

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
# Head marker of the on-chain owner linked list.
SENTINEL_OWNERS = "0x0000000000000000000000000000000000000001"
SIGNATURE_LENGTH = 65

SAFE_TX_FIELDS = [
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "data", "type": "bytes"},
    {"name": "operation", "type": "uint8"},
    {"name": "safeTxGas", "type": "uint256"},
    {"name": "baseGas", "type": "uint256"},
    {"name": "gasPrice", "type": "uint256"},
    {"name": "gasToken", "type": "address"},
    {"name": "refundReceiver", "type": "address"},
    {"name": "nonce", "type": "uint256"},
]
SAFE_TX_TYPE = "SafeTx(" + ",".join(f"{f['type']} {f['name']}" for f in SAFE_TX_FIELDS) + ")"
SAFE_TX_TYPEHASH = bytes(Web3.keccak(text=SAFE_TX_TYPE))
DOMAIN_TYPE = "EIP712Domain(address verifyingContract)"
DOMAIN_TYPE_WITH_CHAIN = "EIP712Domain(uint256 chainId,address verifyingContract)"

SignatureInput = Union[bytes, str, Mapping[str, Union[bytes, str]], Sequence[Union[bytes, str]]]


class Operation(IntEnum):
    CALL = 0
    DELEGATE_CALL = 1


@dataclass(frozen=True)
class SafeTransaction:
    """One pending multisig action, bound to a single nonce slot of a safe."""

    to: str
    value: int = 0
    data: bytes = b""
    operation: int = 0
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: str = ZERO_ADDRESS
    refund_receiver: str = ZERO_ADDRESS
    nonce: int = 0

    @classmethod
    def create(
        cls,
        to: str,
        value: Any = 0,
        data: BytesLike = b"",
        operation: Any = Operation.CALL,
        safe_tx_gas: Any = 0,
        base_gas: Any = 0,
        gas_price: Any = 0,
        gas_token: str = ZERO_ADDRESS,
        refund_receiver: str = ZERO_ADDRESS,
        nonce: Any = 0,
    ) -> "SafeTransaction":
        op = uint(operation, "operation", bits=8)
        if op not in (Operation.CALL, Operation.DELEGATE_CALL):
            raise ValidationError("operation must be CALL (0) or DELEGATE_CALL (1)", context={"operation": op})
        return cls(
            to=checksum(to, "to"),
            value=uint(value, "value"),
            data=data_bytes(data, "data"),
            operation=int(op),
            safe_tx_gas=uint(safe_tx_gas, "safeTxGas"),
            base_gas=uint(base_gas, "baseGas"),
            gas_price=uint(gas_price, "gasPrice"),
            gas_token=checksum(gas_token, "gasToken"),
            refund_receiver=checksum(refund_receiver, "refundReceiver"),
            nonce=uint(nonce, "nonce"),
        )

    def message(self) -> Dict[str, Any]:
        return {
            "to": self.to,
            "value": self.value,
            "data": Web3.to_hex(self.data),
            "operation": self.operation,
            "safeTxGas": self.safe_tx_gas,
            "baseGas": self.base_gas,
            "gasPrice": self.gas_price,
            "gasToken": self.gas_token,
            "refundReceiver": self.refund_receiver,
            "nonce": self.nonce,
        }

    def struct_hash(self) -> bytes:
        encoded = abi_encode(
            ["bytes32", "address", "uint256", "bytes32", "uint8", "uint256", "uint256", "uint256", "address", "address", "uint256"],
            [
                SAFE_TX_TYPEHASH,
                self.to,
                self.value,
                bytes(Web3.keccak(self.data)),
                self.operation,
                self.safe_tx_gas,
                self.base_gas,
                self.gas_price,
                self.gas_token,
                self.refund_receiver,
                self.nonce,
            ],
        )
        return bytes(Web3.keccak(encoded))


# -- codec -------------------------------------------------------------------
def domain_separator(safe_address: str, chain_id: Optional[int] = None) -> bytes:
    safe = checksum(safe_address, "verifyingContract")
    if chain_id is None:
        encoded = abi_encode(["bytes32", "address"], [Web3.keccak(text=DOMAIN_TYPE), safe])
    else:
        encoded = abi_encode(
            ["bytes32", "uint256", "address"],
            [Web3.keccak(text=DOMAIN_TYPE_WITH_CHAIN), uint(chain_id, "chainId"), safe],
        )
    return bytes(Web3.keccak(encoded))


def build_safe_tx_data(safe_address: str, safe_tx: SafeTransaction, chain_id: Optional[int] = None) -> Dict[str, Any]:
    """EIP-712 structure for ``safe_tx`` as verified by the safe at ``safe_address``."""

    domain_fields: List[Dict[str, str]] = [{"name": "verifyingContract", "type": "address"}]
    domain: Dict[str, Any] = {"verifyingContract": checksum(safe_address, "verifyingContract")}
    if chain_id is not None:
        domain_fields.insert(0, {"name": "chainId", "type": "uint256"})
        domain["chainId"] = uint(chain_id, "chainId")
    return {
        "types": {
            "EIP712Domain": domain_fields,
            "SafeTx": [dict(entry) for entry in SAFE_TX_FIELDS],
        },
        "primaryType": "SafeTx",
        "domain": domain,
        "message": safe_tx.message(),
    }


def safe_tx_hash(safe_address: str, safe_tx: SafeTransaction, chain_id: Optional[int] = None) -> bytes:
    """The digest the safe's ``checkSignatures`` recovers signers against."""

    return bytes(Web3.keccak(b"\x19\x01" + domain_separator(safe_address, chain_id) + safe_tx.struct_hash()))


def sign_safe_transaction(typed_data: Mapping[str, Any], account: Any) -> bytes:
    """Sign typed data with an ``eth_account`` account, returning ``r || s || v``."""

    signed = account.sign_message(encode_typed_data(full_message=dict(typed_data)))
    return bytes(signed.signature)


def recover_signer(typed_data: Mapping[str, Any], signature: BytesLike) -> str:
    signable = encode_typed_data(full_message=dict(typed_data))
    return Account.recover_message(signable, signature=_normalise_signature(signature))


def _normalise_signature(signature: BytesLike) -> bytes:
    raw = data_bytes(signature, "signature")
    if len(raw) != SIGNATURE_LENGTH:
        raise ValidationError("signature must be 65 bytes long", context={"length": len(raw)})
    return raw


def combine_signatures(signatures: Mapping[str, BytesLike]) -> bytes:
    """Concatenate per-owner signatures ordered by ascending owner address."""

    if not signatures:
        raise ValidationError("at least one signature is required")
    ordered = sorted(
        ((checksum(owner, "signer"), signature) for owner, signature in signatures.items()),
        key=lambda item: int(item[0], 16),
    )
    return b"".join(_normalise_signature(signature) for _, signature in ordered)


def _signature_blob(signatures: SignatureInput) -> bytes:
    if isinstance(signatures, Mapping):
        return combine_signatures(signatures)
    if isinstance(signatures, (bytes, bytearray, str)):
        raw = data_bytes(signatures, "signatures")
        if not raw or len(raw) % SIGNATURE_LENGTH:
            raise ValidationError("signature bytes must be a multiple of 65", context={"length": len(raw)})
        return raw
    if not signatures:
        raise ValidationError("at least one signature is required")
    return b"".join(_normalise_signature(signature) for signature in signatures)


def find_previous_owner(owners: Sequence[str], owner: str) -> str:
    """Return the linked-list predecessor of ``owner``.

    ``owners`` is the ``getOwners()`` result, head first. The head's
    predecessor is the sentinel entry.
    """

    target = checksum(owner, "owner").lower()
    lowered = [checksum(entry, "owners").lower() for entry in owners]
    if target not in lowered:
        raise ValidationError("address is not an owner", context={"owner": owner})
    index = lowered.index(target)
    if index == 0:
        return SENTINEL_OWNERS
    return Web3.to_checksum_address(owners[index - 1])


# -- facade ------------------------------------------------------------------
class GnosisSafe:
    """Owner-gated actions against one deployed safe proxy.

    Nonce handling is the caller's job: fetch :meth:`get_nonce`, build and
    sign, then execute before starting the next action on the same safe.
    """

    def __init__(
        self,
        address: str,
        web3: Any,
        *,
        context: Optional[AppContext] = None,
        abi_provider: Optional[AbiBinProvider] = None,
        chain_id: Optional[int] = None,
    ) -> None:
        self.address = checksum(address, "safe")
        self.web3 = web3
        self.context = context or get_context()
        self.abi_provider = abi_provider or default_provider()
        self.chain_id = chain_id
        self.contract = web3.eth.contract(address=self.address, abi=self.abi_provider.get_abi(ContractName.GNOSIS_SAFE))
        self._sender = TxSender(web3, context=self.context, abi_provider=self.abi_provider)

    # -- executable data --------------------------------------------------
    def _encode(self, function: str, args: List[Any]) -> str:
        data = self.contract.encode_abi(function, args=args)
        self.context.ledger.log("safe_encode", params={"safe": self.address, "function": function})
        return data

    def get_add_owner_with_threshold_executable_data(self, owner: str, threshold: Any) -> str:
        return self._encode("addOwnerWithThreshold", [checksum(owner, "owner"), self._threshold(threshold)])

    def get_remove_owner_executable_data(self, previous_owner: str, owner: str, threshold: Any) -> str:
        return self._encode(
            "removeOwner",
            [checksum(previous_owner, "prevOwner"), checksum(owner, "owner"), self._threshold(threshold)],
        )

    def get_swap_owner_executable_data(self, previous_owner: str, old_owner: str, new_owner: str) -> str:
        return self._encode(
            "swapOwner",
            [checksum(previous_owner, "prevOwner"), checksum(old_owner, "oldOwner"), checksum(new_owner, "newOwner")],
        )

    def get_change_threshold_executable_data(self, threshold: Any) -> str:
        return self._encode("changeThreshold", [self._threshold(threshold)])

    @staticmethod
    def _threshold(value: Any) -> int:
        threshold = uint(value, "threshold")
        if threshold < 1:
            raise ValidationError("threshold must be positive", context={"threshold": threshold})
        return threshold

    # -- codec ------------------------------------------------------------
    def get_safe_tx_data(
        self,
        to: str,
        value: Any,
        data: BytesLike,
        operation: Any,
        safe_tx_gas: Any,
        base_gas: Any,
        gas_price: Any,
        gas_token: str,
        refund_receiver: str,
        nonce: Any,
    ) -> Dict[str, Any]:
        safe_tx = SafeTransaction.create(
            to, value, data, operation, safe_tx_gas, base_gas, gas_price, gas_token, refund_receiver, nonce
        )
        return build_safe_tx_data(self.address, safe_tx, self.chain_id)

    def safe_tx_hash(self, safe_tx: SafeTransaction) -> bytes:
        return safe_tx_hash(self.address, safe_tx, self.chain_id)

    def get_transaction_hash(self, safe_tx: SafeTransaction) -> bytes:
        """Digest computed by the contract itself, for cross-checking :meth:`safe_tx_hash`."""

        return bytes(
            self.contract.functions.getTransactionHash(
                safe_tx.to,
                safe_tx.value,
                safe_tx.data,
                safe_tx.operation,
                safe_tx.safe_tx_gas,
                safe_tx.base_gas,
                safe_tx.gas_price,
                safe_tx.gas_token,
                safe_tx.refund_receiver,
                safe_tx.nonce,
            ).call()
        )

    # -- execution --------------------------------------------------------
    def exec_transaction(
        self,
        to: str,
        value: Any,
        data: BytesLike,
        operation: Any,
        safe_tx_gas: Any,
        base_gas: Any,
        gas_price: Any,
        gas_token: str,
        refund_receiver: str,
        signatures: SignatureInput,
        options: Union[TxOptions, Mapping[str, Any], None] = None,
        signer: Signer = None,
    ) -> TransactionReceipt:
        safe_tx = SafeTransaction.create(
            to, value, data, operation, safe_tx_gas, base_gas, gas_price, gas_token, refund_receiver
        )
        return self.exec_safe_transaction(safe_tx, signatures, options=options, signer=signer)

    def exec_safe_transaction(
        self,
        safe_tx: SafeTransaction,
        signatures: SignatureInput,
        *,
        options: Union[TxOptions, Mapping[str, Any], None] = None,
        signer: Signer = None,
    ) -> TransactionReceipt:
        """Submit ``execTransaction``; the nonce is taken on-chain at execution time."""

        blob = _signature_blob(signatures)
        call_data = self.contract.encode_abi(
            "execTransaction",
            args=[
                safe_tx.to,
                safe_tx.value,
                safe_tx.data,
                safe_tx.operation,
                safe_tx.safe_tx_gas,
                safe_tx.base_gas,
                safe_tx.gas_price,
                safe_tx.gas_token,
                safe_tx.refund_receiver,
                blob,
            ],
        )
        params = {"safe": self.address, "to": safe_tx.to, "value": safe_tx.value, "operation": safe_tx.operation}
        receipt = self._sender.send({"to": self.address, "data": call_data}, signer, options)
        if receipt.events.get("ExecutionFailure"):
            self.context.ledger.log("safe_exec", params=params, ok=False, severity="ERROR", result=receipt.summary())
            raise RevertError("safe transaction failed inside the safe", receipt=receipt, context=params)
        self.context.ledger.log("safe_exec", params=params, result=receipt.summary())
        return receipt

    # -- state ------------------------------------------------------------
    def get_nonce(self) -> int:
        return int(self.contract.functions.nonce().call())

    def get_owners(self) -> List[str]:
        owners = [Web3.to_checksum_address(owner) for owner in self.contract.functions.getOwners().call()]
        self.context.ledger.log("safe_owners", params={"safe": self.address}, result={"count": len(owners)})
        return owners

    def get_threshold(self) -> int:
        return int(self.contract.functions.getThreshold().call())

    def find_previous_owner(self, owners: Sequence[str], owner: str) -> str:
        return find_previous_owner(owners, owner)

    def info(self) -> Dict[str, Any]:
        owners = self.get_owners()
        return {
            "safe": self.address,
            "owners": owners,
            "threshold": self.get_threshold(),
            "nonce": self.get_nonce(),
        }


__all__ = [
    "DOMAIN_TYPE",
    "GnosisSafe",
    "Operation",
    "SAFE_TX_TYPE",
    "SAFE_TX_TYPEHASH",
    "SENTINEL_OWNERS",
    "SafeTransaction",
    "ZERO_ADDRESS",
    "build_safe_tx_data",
    "combine_signatures",
    "domain_separator",
    "find_previous_owner",
    "recover_signer",
    "safe_tx_hash",
    "sign_safe_transaction",
]
