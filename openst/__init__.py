"""Python SDK for the TokenHolder and multisig wallet contracts."""

from .abi import AbiBinProvider, ContractName
from .errors import NotFoundError, OpenSTError, RevertError, SubmissionError, ValidationError
from .events import EventDecoder
from .safe import GnosisSafe, SafeTransaction
from .token_holder import TokenHolder
from .tx import TransactionReceipt, TxOptions, TxSender
from .user import User

__version__ = "0.1.0"

__all__ = [
    "AbiBinProvider",
    "ContractName",
    "EventDecoder",
    "GnosisSafe",
    "NotFoundError",
    "OpenSTError",
    "RevertError",
    "SafeTransaction",
    "SubmissionError",
    "TokenHolder",
    "TransactionReceipt",
    "TxOptions",
    "TxSender",
    "User",
    "ValidationError",
    "__version__",
]
