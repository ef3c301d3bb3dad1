"""
Error taxonomy for transaction building.

Every failure that aborts a build is raised as a TransactionBuildError
subclass carrying a machine-readable kind and a context dict, so callers can
surface a single structured failure.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    MALFORMED_PREVIOUS_TRANSACTION = "malformed_previous_transaction"
    SIGNATURE_VALIDATION_FAILED = "signature_validation_failed"
    ORACLE_UNREACHABLE = "oracle_unreachable"
    INVALID_INPUT = "invalid_input"
    BROADCAST_FAILED = "broadcast_failed"


class TransactionBuildError(Exception):
    """Base class for all build failures."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "context": self.context}


class InsufficientFundsError(TransactionBuildError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class MalformedPreviousTransactionError(TransactionBuildError):
    kind = ErrorKind.MALFORMED_PREVIOUS_TRANSACTION


class SignatureValidationError(TransactionBuildError):
    kind = ErrorKind.SIGNATURE_VALIDATION_FAILED

    def __init__(self, input_index: int, message: str | None = None, **context: Any):
        super().__init__(
            message or f"Signature validation failed for input {input_index}",
            input_index=input_index,
            **context,
        )
        self.input_index = input_index


class OracleUnreachableError(TransactionBuildError):
    kind = ErrorKind.ORACLE_UNREACHABLE


class InvalidInputError(TransactionBuildError):
    kind = ErrorKind.INVALID_INPUT


class BroadcastError(TransactionBuildError):
    kind = ErrorKind.BROADCAST_FAILED
