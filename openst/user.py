"""Creation and configuration of user and company wallets."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Sequence, Union

from .abi import AbiBinProvider, ContractName, default_provider
from .core import AppContext, get_context
from .events import require_event
from .tx import Signer, TransactionReceipt, TxOptions, TxSender
from .validation import BytesLike, checksum, data_bytes, owners_and_threshold, session_key_triples

Options = Union[TxOptions, Mapping[str, Any], None]


class User:
    """Create a user's GnosisSafe + TokenHolder pair, or a company TokenHolder.

    Parameters
    ----------
    gnosis_safe_master_copy:
        Address of the GnosisSafe master copy the proxies delegate to.
    token_holder_master_copy:
        Address of the TokenHolder master copy.
    eip20_token:
        The economy's EIP20 token.
    token_rules:
        The economy's TokenRules contract.
    user_wallet_factory_address:
        Deployed ``UserWalletFactory``.
    web3:
        Connected ``Web3`` instance for the auxiliary chain.
    """

    def __init__(
        self,
        gnosis_safe_master_copy: str,
        token_holder_master_copy: str,
        eip20_token: str,
        token_rules: str,
        user_wallet_factory_address: str,
        web3: Any,
        *,
        context: Optional[AppContext] = None,
        abi_provider: Optional[AbiBinProvider] = None,
    ) -> None:
        self.gnosis_safe_master_copy = checksum(gnosis_safe_master_copy, "gnosisSafeMasterCopy")
        self.token_holder_master_copy = checksum(token_holder_master_copy, "tokenHolderMasterCopy")
        self.eip20_token = checksum(eip20_token, "eip20Token")
        self.token_rules = checksum(token_rules, "tokenRules")
        self.user_wallet_factory_address = checksum(user_wallet_factory_address, "userWalletFactory")
        self.web3 = web3
        self.context = context or get_context()
        self.abi_provider = abi_provider or default_provider()
        self._sender = TxSender(web3, context=self.context, abi_provider=self.abi_provider)

    def _contract(self, name: ContractName, address: str) -> Any:
        return self.web3.eth.contract(address=address, abi=self.abi_provider.get_abi(name))

    # -- executable data --------------------------------------------------
    def get_gnosis_safe_data(self, owners: Sequence[str], threshold: Any, to: str, data: BytesLike) -> str:
        """``setup`` call data the factory forwards to the new safe proxy."""

        checked_owners, checked_threshold = owners_and_threshold(owners, threshold)
        safe = self._contract(ContractName.GNOSIS_SAFE, self.gnosis_safe_master_copy)
        return safe.encode_abi(
            "setup",
            args=[checked_owners, checked_threshold, checksum(to, "to"), data_bytes(data, "data")],
        )

    def get_token_holder_setup_executable_data(
        self,
        owner: str,
        session_keys: Sequence[str],
        session_keys_spending_limits: Sequence[Any],
        session_keys_expiration_heights: Sequence[Any],
    ) -> str:
        keys, limits, heights = session_key_triples(
            session_keys, session_keys_spending_limits, session_keys_expiration_heights
        )
        holder = self._contract(ContractName.TOKEN_HOLDER, self.token_holder_master_copy)
        return holder.encode_abi(
            "setup",
            args=[self.eip20_token, self.token_rules, checksum(owner, "owner"), keys, limits, heights],
        )

    # -- wallet creation --------------------------------------------------
    def create_user_wallet(
        self,
        owners: Sequence[str],
        threshold: Any,
        to: str,
        data: BytesLike,
        session_keys: Sequence[str],
        session_keys_spending_limits: Sequence[Any],
        session_keys_expiration_heights: Sequence[Any],
        options: Options = None,
        signer: Signer = None,
    ) -> TransactionReceipt:
        """Deploy and configure a safe proxy and a TokenHolder proxy owned by it."""

        keys, limits, heights = session_key_triples(
            session_keys, session_keys_spending_limits, session_keys_expiration_heights
        )
        gnosis_safe_data = self.get_gnosis_safe_data(owners, threshold, to, data)
        factory = self._contract(ContractName.USER_WALLET_FACTORY, self.user_wallet_factory_address)
        call_data = factory.encode_abi(
            "createUserWallet",
            args=[
                self.gnosis_safe_master_copy,
                gnosis_safe_data,
                self.token_holder_master_copy,
                self.eip20_token,
                self.token_rules,
                keys,
                limits,
                heights,
            ],
        )
        receipt = self._sender.send({"to": self.user_wallet_factory_address, "data": call_data}, signer, options)
        created = require_event(receipt, "UserWalletCreated")
        self.context.ledger.log(
            "user_wallet_create",
            params={"owners": len(owners), "threshold": threshold, "sessionKeys": len(keys)},
            result={"safe": created.get("_gnosisSafeProxy"), "tokenHolder": created.get("_tokenHolderProxy")},
        )
        return receipt

    def create_company_wallet(
        self,
        proxy_factory: str,
        owner: str,
        session_keys: Sequence[str],
        session_keys_spending_limits: Sequence[Any],
        session_keys_expiration_heights: Sequence[Any],
        options: Options = None,
        signer: Signer = None,
    ) -> TransactionReceipt:
        """Deploy a TokenHolder proxy owned directly by ``owner`` (e.g. a hardware wallet)."""

        factory_address = checksum(proxy_factory, "proxyFactory")
        setup_data = self.get_token_holder_setup_executable_data(
            owner, session_keys, session_keys_spending_limits, session_keys_expiration_heights
        )
        factory = self._contract(ContractName.PROXY_FACTORY, factory_address)
        call_data = factory.encode_abi("createProxy", args=[self.token_holder_master_copy, setup_data])
        receipt = self._sender.send({"to": factory_address, "data": call_data}, signer, options)
        created = require_event(receipt, "ProxyCreated")
        self.context.ledger.log(
            "company_wallet_create",
            params={"owner": owner, "sessionKeys": len(session_keys)},
            result={"tokenHolder": created.get("_proxy")},
        )
        return receipt


def user_wallet_addresses(receipt: TransactionReceipt) -> Dict[str, str]:
    """Safe and TokenHolder proxy addresses announced by ``UserWalletCreated``."""

    created = require_event(receipt, "UserWalletCreated")
    return {"gnosis_safe": created["_gnosisSafeProxy"], "token_holder": created["_tokenHolderProxy"]}


__all__ = ["User", "user_wallet_addresses"]
