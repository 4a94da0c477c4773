"""Submission of a single inventory-affecting transaction."""

from __future__ import annotations

import enum
import logging
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar
from zoneinfo import ZoneInfo

from .cache import ReferenceDataCache
from .config import APP_TIMEZONE, FETCH_TIMEOUT_S
from .errors import FetchTimeout, LedgerError, ProcedureError, TransactionErrorKind, TransactionRejected
from .ledger import LedgerFetcher, bounded
from .models import OUTGOING_TYPES, TRANSACTION_TYPES
from .procedures import InventoryProcedure
from .schemas import TransactionReceipt, TransactionRequest

logger = logging.getLogger("lobster-dashboard.commands")

T = TypeVar("T")
SuccessHook = Callable[[TransactionReceipt], Awaitable[None]]


class CommandState(str, enum.Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"


def validate_request(request: TransactionRequest) -> tuple[str, Optional[str]]:
    """Local checks that need no database; returns the normalized type and destination."""

    quantity = request.quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise TransactionRejected(TransactionErrorKind.QUANTITY_INVALID, "Quantity must be a positive whole number")

    transaction_type = request.transaction_type.strip().upper()
    if transaction_type not in TRANSACTION_TYPES:
        raise TransactionRejected(
            TransactionErrorKind.INVALID_TRANSACTION_TYPE,
            f"Unknown transaction type {request.transaction_type!r}",
        )

    destination = (request.destination or "").strip() or None
    if transaction_type != "ADD" and destination is None:
        raise TransactionRejected(
            TransactionErrorKind.DESTINATION_REQUIRED,
            f"Destination is required for {transaction_type} transactions",
        )
    return transaction_type, destination


class TransactionCommand:
    """Validate and submit one transaction through ``manage_inventory``.

    The stock pre-check for depleting transactions is advisory; the procedure
    repeats it authoritatively. Nothing is retried automatically.
    """

    def __init__(
        self,
        fetcher: LedgerFetcher,
        cache: ReferenceDataCache,
        procedure: InventoryProcedure,
        *,
        timeout: float = FETCH_TIMEOUT_S,
        tz: ZoneInfo = APP_TIMEZONE,
    ) -> None:
        self._fetcher = fetcher
        self._cache = cache
        self._procedure = procedure
        self._timeout = timeout
        self._tz = tz
        self._hooks: list[SuccessHook] = []
        self.state = CommandState.IDLE
        self.last_error: Optional[TransactionRejected] = None

    def on_success(self, hook: SuccessHook) -> None:
        self._hooks.append(hook)

    async def submit(self, request: TransactionRequest) -> TransactionReceipt:
        if self.state is CommandState.SUBMITTING:
            raise TransactionRejected(
                TransactionErrorKind.SUBMISSION_IN_PROGRESS, "A transaction is already being submitted"
            )
        self.state = CommandState.SUBMITTING
        try:
            receipt = await self._submit(request)
        except TransactionRejected as exc:
            self.last_error = exc
            logger.info("Transaction rejected (%s): %s", exc.kind.value, exc.message)
            raise
        finally:
            self.state = CommandState.IDLE

        self.last_error = None
        for hook in self._hooks:
            try:
                await hook(receipt)
            except Exception:
                logger.exception("Post-commit hook failed")
        return receipt

    async def _read(self, awaitable: Awaitable[T], label: str) -> T:
        try:
            return await bounded(awaitable, self._timeout, label)
        except FetchTimeout as exc:
            raise TransactionRejected(TransactionErrorKind.TIMEOUT, str(exc)) from exc
        except LedgerError as exc:
            raise TransactionRejected(TransactionErrorKind.OTHER, str(exc)) from exc

    async def _submit(self, request: TransactionRequest) -> TransactionReceipt:
        transaction_type, destination = validate_request(request)

        lobster_type = await self._read(self._cache.find_lobster_type(request.lobster_type), "lobster types")
        weight_class = await self._read(self._cache.find_weight_class(request.weight_class), "weight classes")
        if lobster_type is None or weight_class is None:
            raise TransactionRejected(TransactionErrorKind.UNKNOWN_REFERENCE, "Unknown lobster type or weight class")

        label = f"{lobster_type.name} ({weight_class.weight_range})"
        if transaction_type in OUTGOING_TYPES:
            available = await self._read(
                self._fetcher.fetch_available_quantity(lobster_type.id, weight_class.id), "available quantity"
            )
            if available is None:
                raise TransactionRejected(TransactionErrorKind.INVENTORY_MISSING, f"No stock recorded for {label}")
            if available < request.quantity:
                raise TransactionRejected(
                    TransactionErrorKind.INSUFFICIENT_INVENTORY,
                    f"Insufficient stock: only {available} {label} available",
                    available=available,
                )

        transaction_date = request.transaction_date
        if transaction_date.tzinfo is None:
            transaction_date = transaction_date.replace(tzinfo=self._tz)

        try:
            await bounded(
                self._procedure.manage_inventory(
                    type_id=lobster_type.id,
                    weight_class_id=weight_class.id,
                    quantity=request.quantity,
                    transaction_type=transaction_type,
                    destination=destination,
                    note=(request.note or "").strip() or None,
                    transaction_date=transaction_date,
                ),
                self._timeout,
                "manage_inventory",
            )
        except FetchTimeout as exc:
            raise TransactionRejected(
                TransactionErrorKind.TIMEOUT,
                "No answer from manage_inventory in time; check the history before resubmitting",
            ) from exc
        except ProcedureError as exc:
            message = exc.message
            if exc.kind is TransactionErrorKind.INSUFFICIENT_INVENTORY and exc.available is not None:
                message = f"Insufficient stock: only {exc.available} {label} available"
            raise TransactionRejected(exc.kind, message, available=exc.available) from exc

        logger.info("Recorded %s of %d %s", transaction_type, request.quantity, label)
        return TransactionReceipt(
            lobster_type=lobster_type.name,
            weight_class=weight_class.weight_range,
            quantity=request.quantity,
            transaction_type=transaction_type,
            transaction_date=transaction_date,
        )
