"""Queries against the hosted ledger tables and the timeout wrapper around them."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models, schemas
from .config import APP_TIMEZONE
from .errors import FetchTimeout, LedgerError

logger = logging.getLogger("lobster-dashboard.ledger")

T = TypeVar("T")


@dataclass(frozen=True)
class TransactionFilters:
    lobster_type_id: Optional[uuid.UUID] = None
    transaction_type: Optional[str] = None


def _report_late_result(label: str) -> Callable[[asyncio.Future], None]:
    def _callback(task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("%s failed after its caller timed out: %s", label, exc)
        else:
            logger.debug("%s finished after its caller timed out; result dropped", label)

    return _callback


async def bounded(awaitable: Awaitable[T], timeout: float, label: str) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    On expiry :class:`FetchTimeout` is raised but the underlying call keeps
    running; only the caller stops waiting for it.
    """

    task = asyncio.ensure_future(awaitable)
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        return task.result()
    task.add_done_callback(_report_late_result(label))
    logger.warning("%s timed out after %ss", label, timeout)
    raise FetchTimeout(label, timeout)


async def bounded_or_default(awaitable: Awaitable[T], timeout: float, label: str, default: T) -> T:
    try:
        return await bounded(awaitable, timeout, label)
    except LedgerError as exc:
        logger.warning("Falling back to an empty result for %s: %s", label, exc)
        return default


def _notes_text(notes: Any) -> Optional[str]:
    if notes is None or notes == "":
        return None
    if isinstance(notes, str):
        return notes
    if isinstance(notes, dict):
        return notes.get("note") or json.dumps(notes, ensure_ascii=False)
    return str(notes)


class LedgerFetcher:
    """Reads reference data, inventory and transactions; every call uses its own session."""

    def __init__(self, session_factory: async_sessionmaker, tz: ZoneInfo = APP_TIMEZONE) -> None:
        self._session_factory = session_factory
        self._tz = tz

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    async def _run(self, label: str, query: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            async with self._session_factory() as session:
                return await query(session)
        except (SQLAlchemyError, OSError) as exc:
            raise LedgerError(f"{label} failed: {exc}") from exc

    def _localize(self, value: dt.datetime) -> dt.datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(self._tz)

    def _transaction_row(self, row: models.Transaction) -> schemas.TransactionRow:
        return schemas.TransactionRow(
            id=row.id,
            type_id=row.type_id,
            weight_class_id=row.weight_class_id,
            transaction_type=row.transaction_type,
            quantity=row.quantity or 0,
            transaction_date=self._localize(row.transaction_date),
            destination=row.destination or None,
            notes=_notes_text(row.notes),
        )

    def _range_conditions(
        self,
        start: Optional[dt.date],
        end: Optional[dt.date],
        filters: Optional[TransactionFilters],
    ) -> list[Any]:
        conditions: list[Any] = []
        if start is not None:
            conditions.append(
                models.Transaction.transaction_date >= dt.datetime.combine(start, dt.time.min, tzinfo=self._tz)
            )
        if end is not None:
            next_day = end + dt.timedelta(days=1)
            conditions.append(
                models.Transaction.transaction_date < dt.datetime.combine(next_day, dt.time.min, tzinfo=self._tz)
            )
        if filters is not None:
            if filters.lobster_type_id is not None:
                conditions.append(models.Transaction.type_id == filters.lobster_type_id)
            if filters.transaction_type is not None:
                conditions.append(models.Transaction.transaction_type == filters.transaction_type)
        return conditions

    # --- reference data ----------------------------------------------------

    async def fetch_lobster_types(self) -> list[schemas.LobsterType]:
        async def query(session: AsyncSession) -> list[schemas.LobsterType]:
            result = await session.execute(
                select(models.LobsterType.id, models.LobsterType.name).order_by(models.LobsterType.name.asc())
            )
            return [schemas.LobsterType(id=row.id, name=row.name) for row in result]

        return await self._run("lobster types", query)

    async def fetch_weight_classes(self) -> list[schemas.WeightClass]:
        async def query(session: AsyncSession) -> list[schemas.WeightClass]:
            result = await session.execute(
                select(models.WeightClass.id, models.WeightClass.weight_range).order_by(
                    models.WeightClass.weight_range.asc()
                )
            )
            return [schemas.WeightClass(id=row.id, weight_range=row.weight_range) for row in result]

        return await self._run("weight classes", query)

    # --- inventory ---------------------------------------------------------

    async def fetch_inventory_snapshot(self) -> list[schemas.InventoryRow]:
        async def query(session: AsyncSession) -> list[schemas.InventoryRow]:
            result = await session.execute(
                select(models.Inventory.type_id, models.Inventory.weight_class_id, models.Inventory.quantity)
            )
            return [
                schemas.InventoryRow(type_id=row.type_id, weight_class_id=row.weight_class_id, quantity=row.quantity or 0)
                for row in result
            ]

        return await self._run("inventory snapshot", query)

    async def fetch_stocked_weight_classes(self, type_id: uuid.UUID) -> list[schemas.WeightClassQuantity]:
        """Weight classes of ``type_id`` that currently hold stock."""

        async def query(session: AsyncSession) -> list[schemas.WeightClassQuantity]:
            result = await session.execute(
                select(models.WeightClass.weight_range, models.Inventory.quantity)
                .select_from(models.Inventory)
                .join(models.WeightClass, models.Inventory.weight_class_id == models.WeightClass.id)
                .where(models.Inventory.type_id == type_id, models.Inventory.quantity > 0)
                .order_by(models.WeightClass.weight_range.asc())
            )
            return [schemas.WeightClassQuantity(weight_range=row[0], quantity=row[1]) for row in result]

        return await self._run("stocked weight classes", query)

    async def fetch_all_weight_classes(self, type_id: uuid.UUID) -> list[schemas.WeightClassQuantity]:
        """Every weight class, with 0 where ``type_id`` has no inventory row."""

        async def query(session: AsyncSession) -> list[schemas.WeightClassQuantity]:
            result = await session.execute(
                select(models.WeightClass.weight_range, func.coalesce(models.Inventory.quantity, 0))
                .select_from(models.WeightClass)
                .outerjoin(
                    models.Inventory,
                    and_(
                        models.Inventory.weight_class_id == models.WeightClass.id,
                        models.Inventory.type_id == type_id,
                    ),
                )
                .order_by(models.WeightClass.weight_range.asc())
            )
            return [schemas.WeightClassQuantity(weight_range=row[0], quantity=row[1]) for row in result]

        return await self._run("weight class breakdown", query)

    async def fetch_available_quantity(self, type_id: uuid.UUID, weight_class_id: uuid.UUID) -> Optional[int]:
        """Current quantity for the pair, or ``None`` when no inventory row exists."""

        async def query(session: AsyncSession) -> Optional[int]:
            result = await session.execute(
                select(models.Inventory.quantity).where(
                    models.Inventory.type_id == type_id,
                    models.Inventory.weight_class_id == weight_class_id,
                )
            )
            quantity = result.scalar_one_or_none()
            return None if quantity is None else int(quantity)

        return await self._run("available quantity", query)

    # --- transactions --------------------------------------------------------

    async def fetch_transactions_in_range(
        self,
        start: Optional[dt.date],
        end: Optional[dt.date],
        filters: Optional[TransactionFilters] = None,
        *,
        ordered: bool = False,
    ) -> list[schemas.TransactionRow]:
        """Transactions dated from ``start`` through ``end`` inclusive; ``None`` leaves a side open."""

        async def query(session: AsyncSession) -> list[schemas.TransactionRow]:
            statement = select(models.Transaction).where(*self._range_conditions(start, end, filters))
            if ordered:
                statement = statement.order_by(models.Transaction.transaction_date.desc())
            result = await session.execute(statement)
            return [self._transaction_row(row) for row in result.scalars().all()]

        return await self._run("transactions in range", query)

    async def fetch_outgoing_transactions(self) -> list[schemas.TransactionRow]:
        async def query(session: AsyncSession) -> list[schemas.TransactionRow]:
            result = await session.execute(
                select(models.Transaction).where(models.Transaction.transaction_type.in_(models.OUTGOING_TYPES))
            )
            return [self._transaction_row(row) for row in result.scalars().all()]

        return await self._run("outgoing transactions", query)

    async def fetch_transaction_page(
        self,
        start: Optional[dt.date],
        end: Optional[dt.date],
        filters: Optional[TransactionFilters],
        page: int,
        per_page: int,
    ) -> tuple[list[schemas.TransactionRow], int]:
        """One page of transactions, newest first, plus the total matching count."""

        conditions = self._range_conditions(start, end, filters)

        async def query(session: AsyncSession) -> tuple[list[schemas.TransactionRow], int]:
            total = await session.scalar(select(func.count()).select_from(models.Transaction).where(*conditions))
            result = await session.execute(
                select(models.Transaction)
                .where(*conditions)
                .order_by(models.Transaction.transaction_date.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
            )
            return [self._transaction_row(row) for row in result.scalars().all()], int(total or 0)

        return await self._run("transaction page", query)
