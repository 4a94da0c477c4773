"""Domain errors and utilities for consistent API error responses."""

from __future__ import annotations

import enum

from fastapi import HTTPException


def api_error(status_code: int, code: str, detail: str, *, headers: dict[str, str] | None = None) -> HTTPException:
    """Create an :class:`HTTPException` with a normalized payload."""

    payload = {"code": code, "detail": detail}
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class LedgerError(Exception):
    """A read against the ledger failed; the current refresh cycle is void."""


class FetchTimeout(LedgerError):
    def __init__(self, label: str, timeout: float) -> None:
        super().__init__(f"{label} timed out after {timeout:g}s")
        self.label = label
        self.timeout = timeout


class TransactionErrorKind(str, enum.Enum):
    QUANTITY_INVALID = "quantity_invalid"
    INVALID_TRANSACTION_TYPE = "invalid_transaction_type"
    DESTINATION_REQUIRED = "destination_required"
    UNKNOWN_REFERENCE = "unknown_reference"
    INVENTORY_MISSING = "inventory_missing"
    INSUFFICIENT_INVENTORY = "insufficient_inventory"
    PROCEDURE_UNAVAILABLE = "procedure_unavailable"
    SUBMISSION_IN_PROGRESS = "submission_in_progress"
    TIMEOUT = "timeout"
    OTHER = "other"


class TransactionRejected(Exception):
    """A transaction was refused, either by local validation or by ``manage_inventory``."""

    def __init__(self, kind: TransactionErrorKind, message: str, *, available: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.available = available


class ProcedureError(Exception):
    """Failure reported by the ``manage_inventory`` procedure, already classified."""

    def __init__(self, kind: TransactionErrorKind, message: str, *, available: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.available = available
