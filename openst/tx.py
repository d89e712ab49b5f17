"""Transaction submission: gas, signing, dispatch and receipt handling."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from .abi import AbiBinProvider, default_provider
from .core import AppContext, get_context
from .errors import RevertError, SubmissionError, ValidationError
from .events import EventDecoder
from .validation import checksum, uint

_PRIVATE_KEY = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
POLL_LATENCY = 0.5

Signer = Union[None, LocalAccount, str]


@dataclass(frozen=True)
class TxOptions:
    """Caller supplied transaction parameters; unset fields are filled in by :class:`TxSender`."""

    sender: Optional[str] = None
    gas: Optional[int] = None
    gas_price: Optional[int] = None
    value: int = 0
    nonce: Optional[int] = None
    timeout: Optional[int] = None
    chain_id: Optional[int] = None

    @classmethod
    def coerce(cls, options: Union["TxOptions", Mapping[str, Any], None]) -> "TxOptions":
        if options is None:
            return cls()
        if isinstance(options, TxOptions):
            return options
        known = {"from", "gas", "gasPrice", "value", "nonce", "timeout", "chainId"}
        unknown = set(options) - known
        if unknown:
            raise ValidationError("unsupported transaction options", context={"options": sorted(unknown)})
        sender = options.get("from")
        return cls(
            sender=checksum(sender, "from") if sender else None,
            gas=uint(options["gas"], "gas") if options.get("gas") is not None else None,
            gas_price=uint(options["gasPrice"], "gasPrice") if options.get("gasPrice") is not None else None,
            value=uint(options.get("value") or 0, "value"),
            nonce=uint(options["nonce"], "nonce") if options.get("nonce") is not None else None,
            timeout=uint(options["timeout"], "timeout") if options.get("timeout") is not None else None,
            chain_id=uint(options["chainId"], "chainId") if options.get("chainId") is not None else None,
        )


@dataclass(frozen=True)
class TransactionReceipt:
    """Outcome of a mined transaction."""

    transaction_hash: str
    status: bool
    block_number: Optional[int]
    gas_used: Optional[int]
    contract_address: Optional[str] = None
    logs: Tuple[Any, ...] = ()
    events: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {
            "hash": self.transaction_hash,
            "status": self.status,
            "block": self.block_number,
            "gas_used": self.gas_used,
            "contract_address": self.contract_address,
            "events": sorted(self.events),
        }


class TxSender:
    """Submit one transaction and wait for it to be mined.

    There is no retry: a node rejection raises :class:`SubmissionError`, a
    mined transaction with ``status == 0`` raises :class:`RevertError`.
    """

    def __init__(
        self,
        web3: Any,
        *,
        context: Optional[AppContext] = None,
        abi_provider: Optional[AbiBinProvider] = None,
    ) -> None:
        self.web3 = web3
        self.context = context or get_context()
        provider = abi_provider or default_provider()
        self.decoder = EventDecoder(provider.event_abis())

    # -- signer -----------------------------------------------------------
    def _resolve_signer(self, signer: Signer) -> Optional[LocalAccount]:
        if signer is None:
            return None
        if isinstance(signer, str):
            label = None if _PRIVATE_KEY.match(signer) else signer
            account = Account.from_key(signer if label is None else self.context.secrets.require(label))
            self.context.ledger.log(
                "tx_signer_load",
                params={"label": label},
                result={"address": account.address},
            )
            return account
        if hasattr(signer, "sign_transaction") and hasattr(signer, "address"):
            return signer
        raise ValidationError("unsupported signer", context={"signer": type(signer).__name__})

    # -- preparation ------------------------------------------------------
    def _prepare(self, call: Mapping[str, Any], opts: TxOptions, account: Optional[LocalAccount]) -> Dict[str, Any]:
        if account is not None:
            sender = account.address
            if opts.sender and opts.sender != account.address:
                raise ValidationError(
                    "'from' does not match the signing account",
                    context={"from": opts.sender, "signer": account.address},
                )
        else:
            sender = opts.sender or self.context.config.deployer_address
            if sender is None:
                raise ValidationError("a 'from' address is required when the node signs")
        tx: Dict[str, Any] = {
            "from": sender,
            "data": HexBytes(call.get("data") or b""),
            "value": opts.value or int(call.get("value") or 0),
        }
        if call.get("to"):
            tx["to"] = checksum(call["to"], "to")
        tx["gasPrice"] = opts.gas_price if opts.gas_price is not None else (
            self.context.config.gas_price or self.web3.eth.gas_price
        )
        tx["gas"] = opts.gas if opts.gas is not None else self._estimate_gas(tx)
        return tx

    def _estimate_gas(self, tx: Dict[str, Any]) -> int:
        estimate_input = {key: tx[key] for key in ("from", "to", "data", "value") if key in tx}
        try:
            return int(self.web3.eth.estimate_gas(estimate_input))
        except (Web3Exception, ValueError) as exc:
            fallback = self.context.config.gas_limit
            self.context.logger.warning("gas estimation failed (%s); using gas limit %s", exc, fallback)
            self.context.ledger.log(
                "tx_estimate_gas",
                params={"to": tx.get("to")},
                ok=False,
                severity="WARNING",
                result={"error": str(exc), "fallback": fallback},
            )
            return fallback

    # -- dispatch ---------------------------------------------------------
    def _submit(self, tx: Dict[str, Any], account: Optional[LocalAccount], opts: TxOptions) -> HexBytes:
        if account is None:
            if opts.nonce is not None:
                tx["nonce"] = opts.nonce
            return HexBytes(self.web3.eth.send_transaction(tx))
        tx["nonce"] = opts.nonce if opts.nonce is not None else self.web3.eth.get_transaction_count(
            account.address, "pending"
        )
        tx["chainId"] = self._chain_id(opts)
        signed = account.sign_transaction(tx)
        return HexBytes(self.web3.eth.send_raw_transaction(signed.raw_transaction))

    def _chain_id(self, opts: TxOptions) -> int:
        if opts.chain_id is not None:
            return opts.chain_id
        if self.context.config.chain_id is not None:
            return self.context.config.chain_id
        return int(self.web3.eth.chain_id)

    def send(
        self,
        call: Mapping[str, Any],
        signer: Signer = None,
        options: Union[TxOptions, Mapping[str, Any], None] = None,
    ) -> TransactionReceipt:
        """Send ``call`` (a ``{"to", "data", "value"}`` mapping) and return its receipt."""

        opts = TxOptions.coerce(options)
        account = self._resolve_signer(signer)
        mode = "node" if account is None else "local"
        params = {"to": call.get("to"), "mode": mode}
        try:
            tx = self._prepare(call, opts, account)
            tx_hash = self._submit(tx, account, opts)
        except ValidationError:
            raise
        except (Web3Exception, ValueError) as exc:
            self.context.ledger.log("tx_send", params=params, ok=False, severity="ERROR", result={"error": str(exc)})
            raise SubmissionError("transaction rejected by node", context=params) from exc

        timeout = opts.timeout or self.context.config.receipt_timeout
        try:
            raw = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=POLL_LATENCY)
        except TimeExhausted as exc:
            self.context.ledger.log(
                "tx_send",
                params=params,
                ok=False,
                severity="ERROR",
                result={"hash": tx_hash.to_0x_hex(), "error": "receipt timeout"},
            )
            raise SubmissionError(
                "transaction not mined before timeout",
                context={**params, "hash": tx_hash.to_0x_hex(), "timeout": timeout},
            ) from exc

        receipt = self._to_receipt(tx_hash, raw)
        self.context.ledger.log(
            "tx_send",
            params={**params, "gas": tx.get("gas"), "gasPrice": tx.get("gasPrice"), "value": tx.get("value")},
            ok=receipt.status,
            severity="INFO" if receipt.status else "ERROR",
            result=receipt.summary(),
        )
        if not receipt.status:
            raise RevertError("transaction reverted", receipt=receipt, context={**params, "hash": receipt.transaction_hash})
        return receipt

    def _to_receipt(self, tx_hash: HexBytes, raw: Mapping[str, Any]) -> TransactionReceipt:
        logs = tuple(raw.get("logs") or ())
        contract_address = raw.get("contractAddress")
        return TransactionReceipt(
            transaction_hash=tx_hash.to_0x_hex(),
            status=int(raw.get("status", 0)) == 1,
            block_number=raw.get("blockNumber"),
            gas_used=raw.get("gasUsed"),
            contract_address=Web3.to_checksum_address(contract_address) if contract_address else None,
            logs=logs,
            events=self.decoder.events_by_name(logs),
        )


__all__ = ["Signer", "TransactionReceipt", "TxOptions", "TxSender"]
