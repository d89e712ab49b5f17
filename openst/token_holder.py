"""TokenHolder session key helpers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Optional

from web3 import Web3

from .abi import AbiBinProvider, ContractName, default_provider
from .core import AppContext, get_context
from .validation import checksum, uint


class AuthorizationStatus(IntEnum):
    NOT_AUTHORIZED = 0
    AUTHORIZED = 1
    REVOKED = 2


@dataclass(frozen=True)
class SessionKeyData:
    """On-chain record of one session key grant."""

    session_key: str
    spending_limit: int
    expiration_height: int
    nonce: int
    status: AuthorizationStatus

    def is_active(self, block_number: int) -> bool:
        return self.status == AuthorizationStatus.AUTHORIZED and block_number < self.expiration_height

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sessionKey": self.session_key,
            "spendingLimit": self.spending_limit,
            "expirationHeight": self.expiration_height,
            "nonce": self.nonce,
            "status": self.status.name,
        }


class TokenHolder:
    """Build owner-only TokenHolder calls and read session key state.

    The executable data returned here is meant to be wrapped into a safe
    transaction (the safe proxy is the TokenHolder owner) and executed with
    :meth:`openst.safe.GnosisSafe.exec_transaction`.
    """

    def __init__(
        self,
        web3: Any,
        address: str,
        *,
        context: Optional[AppContext] = None,
        abi_provider: Optional[AbiBinProvider] = None,
    ) -> None:
        self.address = checksum(address, "tokenHolder")
        self.web3 = web3
        self.context = context or get_context()
        provider = abi_provider or default_provider()
        self.contract = web3.eth.contract(address=self.address, abi=provider.get_abi(ContractName.TOKEN_HOLDER))

    def _encode(self, function: str, args: list) -> str:
        data = self.contract.encode_abi(function, args=args)
        self.context.ledger.log("token_holder_encode", params={"tokenHolder": self.address, "function": function})
        return data

    def get_authorize_session_executable_data(self, session_key: str, spending_limit: Any, expiration_height: Any) -> str:
        return self._encode(
            "authorizeSession",
            [
                checksum(session_key, "sessionKey"),
                uint(spending_limit, "spendingLimit"),
                uint(expiration_height, "expirationHeight"),
            ],
        )

    def get_revoke_session_executable_data(self, session_key: str) -> str:
        return self._encode("revokeSession", [checksum(session_key, "sessionKey")])

    # -- views ------------------------------------------------------------
    def owner(self) -> str:
        return Web3.to_checksum_address(self.contract.functions.owner().call())

    def token(self) -> str:
        return Web3.to_checksum_address(self.contract.functions.token().call())

    def token_rules(self) -> str:
        return Web3.to_checksum_address(self.contract.functions.tokenRules().call())

    def session_key_data(self, session_key: str) -> SessionKeyData:
        key = checksum(session_key, "sessionKey")
        spending_limit, expiration_height, nonce, status = self.contract.functions.sessionKeys(key).call()
        return SessionKeyData(
            session_key=key,
            spending_limit=int(spending_limit),
            expiration_height=int(expiration_height),
            nonce=int(nonce),
            status=AuthorizationStatus(int(status)),
        )

    def is_session_active(self, session_key: str, block_number: Optional[int] = None) -> bool:
        """Whether ``session_key`` is authorized and not yet past its expiration height."""

        data = self.session_key_data(session_key)
        height = block_number if block_number is not None else int(self.web3.eth.block_number)
        return data.is_active(height)


__all__ = ["AuthorizationStatus", "SessionKeyData", "TokenHolder"]
