"""Headless command line surface for openst."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from typing import Any, Optional, Sequence

from eth_account import Account
from web3 import Web3

from . import __version__
from .abi import default_provider
from .core import get_context
from .errors import OpenSTError, ValidationError
from .safe import GnosisSafe, SafeTransaction, build_safe_tx_data, safe_tx_hash
from .token_holder import TokenHolder


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="openst", description="TokenHolder / multisig wallet toolkit")
    parser.add_argument("--version", action="store_true", help="Display version information and exit")
    subparsers = parser.add_subparsers(dest="command")

    # ABIs ---------------------------------------------------------------
    abi = subparsers.add_parser("abi", help="Inspect bundled contract artifacts")
    abi_sub = abi.add_subparsers(dest="abi_command")
    abi_sub.add_parser("list", help="List registered contracts")
    abi_show = abi_sub.add_parser("show", help="Show functions and events of a contract")
    abi_show.add_argument("name")

    # Safes --------------------------------------------------------------
    safe = subparsers.add_parser("safe", help="Read and prepare multisig transactions")
    safe_sub = safe.add_subparsers(dest="safe_command")

    safe_info = safe_sub.add_parser("info", help="Owners, threshold and nonce")
    safe_info.add_argument("safe")

    safe_prev = safe_sub.add_parser("prev-owner", help="Linked-list predecessor of an owner")
    safe_prev.add_argument("safe")
    safe_prev.add_argument("owner")

    safe_tx = safe_sub.add_parser("tx-data", help="EIP-712 typed data and digest for a safe transaction")
    safe_tx.add_argument("safe")
    safe_tx.add_argument("to")
    safe_tx.add_argument("--value", default="0")
    safe_tx.add_argument("--data", default="0x")
    safe_tx.add_argument("--operation", type=int, default=0)
    safe_tx.add_argument("--nonce", default=None, help="Defaults to the safe's current nonce")
    safe_tx.add_argument("--chain-id", type=int, default=None, help="Include chainId in the domain")

    # Sessions -----------------------------------------------------------
    session = subparsers.add_parser("session", help="TokenHolder session keys")
    session_sub = session.add_subparsers(dest="session_command")
    session_show = session_sub.add_parser("show", help="Session key grant and activity")
    session_show.add_argument("token_holder")
    session_show.add_argument("session_key")

    # Configuration ------------------------------------------------------
    subparsers.add_parser("config", help="Show the resolved chain configuration")

    # Signers ------------------------------------------------------------
    signer = subparsers.add_parser("signer", help="Keyring-stored signing keys")
    signer_sub = signer.add_subparsers(dest="signer_command")
    signer_set = signer_sub.add_parser("set", help="Store a private key under a label")
    signer_set.add_argument("label")
    signer_set.add_argument("private_key")
    signer_address = signer_sub.add_parser("address", help="Address of a stored signer")
    signer_address.add_argument("label")

    return parser


def _handle_abi(args: argparse.Namespace) -> Any:
    provider = default_provider()
    if args.abi_command == "list":
        return provider.contract_names()
    if args.abi_command == "show":
        return provider.describe(args.name)
    raise ValueError("Unknown abi command")


def _handle_safe(args: argparse.Namespace) -> Any:
    context = get_context()
    web3 = context.get_web3()
    chain_id = getattr(args, "chain_id", None)
    safe = GnosisSafe(args.safe, web3, context=context, chain_id=chain_id)
    command = args.safe_command
    if command == "info":
        return safe.info()
    if command == "prev-owner":
        previous = safe.find_previous_owner(safe.get_owners(), args.owner)
        return {"owner": Web3.to_checksum_address(args.owner), "previous": previous}
    if command == "tx-data":
        nonce = args.nonce if args.nonce is not None else safe.get_nonce()
        safe_tx = SafeTransaction.create(args.to, args.value, args.data, args.operation, nonce=nonce)
        return {
            "typed_data": build_safe_tx_data(safe.address, safe_tx, chain_id),
            "safe_tx_hash": Web3.to_hex(safe_tx_hash(safe.address, safe_tx, chain_id)),
        }
    raise ValueError("Unknown safe command")


def _handle_session(args: argparse.Namespace) -> Any:
    context = get_context()
    holder = TokenHolder(context.get_web3(), args.token_holder, context=context)
    if args.session_command == "show":
        data = holder.session_key_data(args.session_key)
        block = int(holder.web3.eth.block_number)
        return {**data.as_dict(), "block": block, "active": data.is_active(block)}
    raise ValueError("Unknown session command")


def _handle_config(args: argparse.Namespace) -> Any:
    return asdict(get_context().config)


def _signer_address(private_key: str, label: str) -> str:
    try:
        return Account.from_key(private_key).address
    except ValueError as exc:
        raise ValidationError("not a valid private key", context={"label": label}) from exc


def _handle_signer(args: argparse.Namespace) -> Any:
    secrets = get_context().secrets
    if args.signer_command == "set":
        address = _signer_address(args.private_key, args.label)
        secrets.set(args.label, args.private_key)
        return {"label": args.label, "address": address}
    if args.signer_command == "address":
        return {"label": args.label, "address": _signer_address(secrets.require(args.label), args.label)}
    raise ValueError("Unknown signer command")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.version:
        print(f"openst {__version__}")
        return 0
    if args.command is None:
        parser.print_help()
        return 1
    handlers = {
        "abi": _handle_abi,
        "config": _handle_config,
        "safe": _handle_safe,
        "session": _handle_session,
        "signer": _handle_signer,
    }
    try:
        result = handlers[args.command](args)
    except OpenSTError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    if result is not None:
        json.dump(result, sys.stdout, indent=2, default=str)
        sys.stdout.write("\n")
    return 0


__all__ = ["main"]
