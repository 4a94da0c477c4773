import asyncio
import datetime as dt
import os
import sys
import uuid
from collections import Counter
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

import pytest

# Ensure the package is importable when running tests from the repo root
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("LEDGER_NOTIFY_ENABLED", "0")

from lobster_dashboard import schemas  # noqa: E402
from lobster_dashboard.errors import LedgerError, ProcedureError  # noqa: E402
from lobster_dashboard.ledger import TransactionFilters  # noqa: E402

UTC = ZoneInfo("UTC")


class FakeLedger:
    """In-memory stand-in for :class:`LedgerFetcher` with per-call counters and failure switches."""

    def __init__(self) -> None:
        self.tz = UTC
        self.types: list[schemas.LobsterType] = []
        self.classes: list[schemas.WeightClass] = []
        self.inventory: list[schemas.InventoryRow] = []
        self.transactions: list[schemas.TransactionRow] = []
        self.calls: Counter = Counter()
        self.fail: set[str] = set()
        self.delay: dict[str, float] = {}

    # --- seeding helpers --------------------------------------------------

    def add_type(self, name: str) -> schemas.LobsterType:
        row = schemas.LobsterType(id=uuid.uuid4(), name=name)
        self.types.append(row)
        return row

    def add_class(self, weight_range: str) -> schemas.WeightClass:
        row = schemas.WeightClass(id=uuid.uuid4(), weight_range=weight_range)
        self.classes.append(row)
        return row

    def type_id(self, name: str) -> uuid.UUID:
        return next(row.id for row in self.types if row.name == name)

    def class_id(self, weight_range: str) -> uuid.UUID:
        return next(row.id for row in self.classes if row.weight_range == weight_range)

    def set_stock(self, name: str, weight_range: str, quantity: int) -> None:
        type_id, class_id = self.type_id(name), self.class_id(weight_range)
        self.inventory = [
            row for row in self.inventory if (row.type_id, row.weight_class_id) != (type_id, class_id)
        ]
        self.inventory.append(schemas.InventoryRow(type_id=type_id, weight_class_id=class_id, quantity=quantity))

    def add_transaction(
        self,
        name: str,
        weight_range: str,
        transaction_type: str,
        quantity: int,
        when: dt.datetime,
        destination: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> schemas.TransactionRow:
        row = schemas.TransactionRow(
            id=uuid.uuid4(),
            type_id=self.type_id(name),
            weight_class_id=self.class_id(weight_range),
            transaction_type=transaction_type,
            quantity=quantity,
            transaction_date=when if when.tzinfo else when.replace(tzinfo=UTC),
            destination=destination,
            notes=notes,
        )
        self.transactions.append(row)
        return row

    # --- fetcher interface -------------------------------------------------

    async def _answer(self, name: str, value):
        self.calls[name] += 1
        if name in self.delay:
            await asyncio.sleep(self.delay[name])
        if name in self.fail:
            raise LedgerError(f"{name} failed")
        return value

    def _matching(self, start, end, filters: Optional[TransactionFilters]) -> list[schemas.TransactionRow]:
        rows = []
        for row in self.transactions:
            day = row.transaction_date.astimezone(self.tz).date()
            if start is not None and day < start:
                continue
            if end is not None and day > end:
                continue
            if filters is not None:
                if filters.lobster_type_id is not None and row.type_id != filters.lobster_type_id:
                    continue
                if filters.transaction_type is not None and row.transaction_type != filters.transaction_type:
                    continue
            rows.append(row)
        return rows

    async def fetch_lobster_types(self):
        return await self._answer("fetch_lobster_types", list(self.types))

    async def fetch_weight_classes(self):
        return await self._answer("fetch_weight_classes", list(self.classes))

    async def fetch_inventory_snapshot(self):
        return await self._answer("fetch_inventory_snapshot", list(self.inventory))

    async def fetch_available_quantity(self, type_id, weight_class_id):
        found = next(
            (row.quantity for row in self.inventory if (row.type_id, row.weight_class_id) == (type_id, weight_class_id)),
            None,
        )
        return await self._answer("fetch_available_quantity", found)

    async def fetch_stocked_weight_classes(self, type_id):
        names = {row.id: row.weight_range for row in self.classes}
        rows = sorted(
            (
                schemas.WeightClassQuantity(weight_range=names[row.weight_class_id], quantity=row.quantity)
                for row in self.inventory
                if row.type_id == type_id and row.quantity > 0
            ),
            key=lambda item: item.weight_range,
        )
        return await self._answer("fetch_stocked_weight_classes", rows)

    async def fetch_all_weight_classes(self, type_id):
        stocked = {row.weight_class_id: row.quantity for row in self.inventory if row.type_id == type_id}
        rows = [
            schemas.WeightClassQuantity(weight_range=row.weight_range, quantity=stocked.get(row.id, 0))
            for row in sorted(self.classes, key=lambda item: item.weight_range)
        ]
        return await self._answer("fetch_all_weight_classes", rows)

    async def fetch_transactions_in_range(self, start, end, filters=None, *, ordered=False):
        rows = self._matching(start, end, filters)
        if ordered:
            rows.sort(key=lambda row: row.transaction_date, reverse=True)
        return await self._answer("fetch_transactions_in_range", rows)

    async def fetch_outgoing_transactions(self):
        rows = [row for row in self.transactions if row.transaction_type != "ADD"]
        return await self._answer("fetch_outgoing_transactions", rows)

    async def fetch_transaction_page(self, start, end, filters, page, per_page):
        rows = sorted(self._matching(start, end, filters), key=lambda row: row.transaction_date, reverse=True)
        offset = (page - 1) * per_page
        return await self._answer("fetch_transaction_page", (rows[offset : offset + per_page], len(rows)))


class FakeProcedure:
    """Records ``manage_inventory`` calls; raises ``error`` when set."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.error: Optional[ProcedureError] = None
        self.delay = 0.0

    async def manage_inventory(self, **params) -> None:
        self.calls.append(params)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error


@pytest.fixture()
def ledger() -> FakeLedger:
    """Two lobster types, three weight classes and the stock of the worked example."""

    fake = FakeLedger()
    fake.add_type("Pasir")
    fake.add_type("Mutiara")
    fake.add_class("200-300")
    fake.add_class("100-200")
    fake.add_class("300-400")
    fake.set_stock("Mutiara", "100-200", 10)
    fake.set_stock("Mutiara", "200-300", 5)
    fake.set_stock("Pasir", "100-200", 3)
    return fake


@pytest.fixture()
def procedure() -> FakeProcedure:
    return FakeProcedure()
