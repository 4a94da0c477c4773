"""Boundary to the ``manage_inventory`` stored procedure.

The procedure re-validates the request, applies the signed delta to
``inventory`` (creating the row for ADD) and appends the ``transactions`` row in
one database transaction. Driver errors are classified here, once, into a
:class:`TransactionErrorKind`; callers never inspect messages themselves.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
import uuid
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .errors import ProcedureError, TransactionErrorKind

logger = logging.getLogger("lobster-dashboard.procedures")

UNDEFINED_FUNCTION = "42883"

MANAGE_INVENTORY = text(
    "SELECT manage_inventory("
    ":p_type_id, :p_weight_class_id, :p_quantity, :p_transaction_type, "
    ":p_destination, CAST(:p_notes AS jsonb), :p_transaction_date)"
)

# Messages raised by the procedure; both the deployed Indonesian wording and English are recognised.
_MESSAGE_MARKERS: tuple[tuple[TransactionErrorKind, tuple[str, ...]], ...] = (
    (TransactionErrorKind.QUANTITY_INVALID, ("jumlah harus bilangan positif", "quantity must be positive")),
    (TransactionErrorKind.INVALID_TRANSACTION_TYPE, ("jenis transaksi tidak valid", "invalid transaction type")),
    (TransactionErrorKind.DESTINATION_REQUIRED, ("tujuan wajib", "destination is required", "destination required")),
    (TransactionErrorKind.INVENTORY_MISSING, ("tidak ada stok", "inventory not found", "no inventory")),
    (TransactionErrorKind.INSUFFICIENT_INVENTORY, ("stok tidak cukup", "insufficient")),
)
_FIRST_NUMBER = re.compile(r"\d+")


def classify_procedure_failure(sqlstate: Optional[str], message: str) -> ProcedureError:
    if sqlstate == UNDEFINED_FUNCTION:
        return ProcedureError(TransactionErrorKind.PROCEDURE_UNAVAILABLE, "manage_inventory is not available")
    lowered = message.lower()
    for kind, markers in _MESSAGE_MARKERS:
        if any(marker in lowered for marker in markers):
            available = None
            if kind is TransactionErrorKind.INSUFFICIENT_INVENTORY:
                match = _FIRST_NUMBER.search(message)
                available = int(match.group()) if match else 0
            return ProcedureError(kind, message, available=available)
    return ProcedureError(TransactionErrorKind.OTHER, message or "manage_inventory failed")


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    for candidate in (exc.orig, getattr(exc.orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


class InventoryProcedure:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def manage_inventory(
        self,
        *,
        type_id: uuid.UUID,
        weight_class_id: uuid.UUID,
        quantity: int,
        transaction_type: str,
        destination: Optional[str] = None,
        note: Optional[str] = None,
        transaction_date: Optional[dt.datetime] = None,
    ) -> None:
        params: dict[str, Any] = {
            "p_type_id": type_id,
            "p_weight_class_id": weight_class_id,
            "p_quantity": quantity,
            "p_transaction_type": transaction_type,
            "p_destination": destination,
            "p_notes": json.dumps({"note": note}, ensure_ascii=False) if note else None,
            "p_transaction_date": transaction_date or dt.datetime.now(dt.timezone.utc),
        }
        async with self._session_factory() as session:
            try:
                await session.execute(MANAGE_INVENTORY, params)
                await session.commit()
            except DBAPIError as exc:
                await session.rollback()
                error = classify_procedure_failure(_sqlstate(exc), str(exc.orig))
                logger.info("manage_inventory rejected %s: %s", transaction_type, error.kind.value)
                raise error from exc
            except (SQLAlchemyError, OSError) as exc:
                raise ProcedureError(TransactionErrorKind.OTHER, f"manage_inventory failed: {exc}") from exc
