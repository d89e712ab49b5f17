"""Exception hierarchy for openst."""

from __future__ import annotations

from typing import Any, Dict, Optional


class OpenSTError(Exception):
    """Base exception for openst.

    ``context`` names the call and arguments that failed so callers can
    diagnose without re-running the operation.
    """

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        self.context: Dict[str, Any] = dict(context or {})
        if self.context:
            details = ", ".join(f"{key}={value!r}" for key, value in self.context.items())
            message = f"{message} ({details})"
        super().__init__(message)


class ValidationError(OpenSTError, ValueError):
    """Malformed or mismatched arguments, raised before any network call."""


class NotFoundError(OpenSTError, LookupError):
    """Unknown contract name, or an artifact lacking the requested part."""


class SubmissionError(OpenSTError):
    """The node rejected the transaction, or it was never mined."""


class RevertError(OpenSTError):
    """The transaction was mined but failed on-chain."""

    def __init__(
        self,
        message: str,
        *,
        receipt: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.receipt = receipt
        super().__init__(message, context=context)


__all__ = [
    "NotFoundError",
    "OpenSTError",
    "RevertError",
    "SubmissionError",
    "ValidationError",
]
