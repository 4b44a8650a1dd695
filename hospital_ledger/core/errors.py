"""
Error taxonomy and the result type returned by read operations.

Only validation failures block a write and reach the user as errors. The
others are recovered where they occur (offline fallback, upsert, batch
repair) and travel as warnings on a ``ServiceResult``.
"""
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel


class LedgerError(Exception):
    """Base class for ledger errors."""

    def __init__(self, message: str, *, operation: Optional[str] = None, entity: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.entity = entity

    def context(self) -> str:
        return f"operation={self.operation or '-'} entity={self.entity or '-'}"


class TransientNetworkError(LedgerError):
    """The authoritative store could not be reached."""


class LedgerPermissionError(LedgerError):
    """The caller lacks rights for the operation."""


class NotFoundError(LedgerError):
    """The targeted document does not exist."""


class InvariantViolation(LedgerError):
    """Stored records disagree with each other (e.g. duplicate invoice)."""


class ValidationFailure(LedgerError):
    """Malformed input; raised before any mutation is attempted."""


class InvalidTransitionError(ValidationFailure):
    """The requested appointment state change is not allowed."""


class ResultStatus(str, Enum):
    OK = "ok"
    EMPTY = "empty"
    FAILED = "failed"


class ServiceResult(BaseModel):
    """Outcome of a read or soft-failing write.

    ``EMPTY`` means there was simply no data; ``FAILED`` means the data could
    not be produced, with the reason in ``warnings``.
    """
    status: ResultStatus = ResultStatus.OK
    data: Any = None
    warnings: List[str] = []

    @classmethod
    def ok(cls, data: Any, warnings: Optional[List[str]] = None) -> "ServiceResult":
        if data is None or (isinstance(data, list) and not data):
            return cls(status=ResultStatus.EMPTY, data=data, warnings=warnings or [])
        return cls(status=ResultStatus.OK, data=data, warnings=warnings or [])

    @classmethod
    def failed(cls, warning: str, empty: Any = None) -> "ServiceResult":
        return cls(status=ResultStatus.FAILED, data=empty, warnings=[warning])

    @property
    def is_failed(self) -> bool:
        return self.status == ResultStatus.FAILED
