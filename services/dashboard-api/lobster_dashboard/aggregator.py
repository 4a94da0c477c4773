"""Pure folds from fetched ledger rows to dashboard metrics.

Nothing here touches the network or mutates its inputs; identical rows always
produce identical, identically ordered output. Rows whose lobster type or weight
class id cannot be resolved are grouped under ``"Unknown"`` instead of dropped.
"""

from __future__ import annotations

import calendar
import datetime as dt
import uuid
from collections.abc import Iterable, Mapping

from .models import OUTGOING_TYPES
from .schemas import (
    AggregatedStock,
    DistributionPoint,
    FlowTotals,
    InventoryRow,
    MonthlyPoint,
    TransactionRow,
    TypeTotal,
    WeightClassQuantity,
)

UNKNOWN = "Unknown"
TRAILING_MONTHS = 6


def total_stock(rows: Iterable[InventoryRow]) -> int:
    return sum(row.quantity for row in rows)


def stock_by_type(rows: Iterable[InventoryRow], type_names: Mapping[uuid.UUID, str]) -> list[TypeTotal]:
    totals: dict[str, int] = {}
    for row in rows:
        name = type_names.get(row.type_id, UNKNOWN)
        totals[name] = totals.get(name, 0) + row.quantity
    return [TypeTotal(lobster_type=name, total_quantity=quantity) for name, quantity in sorted(totals.items())]


def stock_breakdown(
    rows: Iterable[InventoryRow],
    type_names: Mapping[uuid.UUID, str],
    weight_ranges: Mapping[uuid.UUID, str],
    *,
    include_empty: bool,
) -> list[AggregatedStock]:
    """Group inventory by type, then weight class; zero rows only when ``include_empty``.

    Each type's ``total_quantity`` comes from :func:`stock_by_type`.
    """

    rows = list(rows)
    type_totals = {item.lobster_type: item.total_quantity for item in stock_by_type(rows, type_names)}
    grouped: dict[str, dict[str, int]] = {}
    for row in rows:
        if row.quantity <= 0 and not include_empty:
            continue
        per_type = grouped.setdefault(type_names.get(row.type_id, UNKNOWN), {})
        weight_range = weight_ranges.get(row.weight_class_id, UNKNOWN)
        per_type[weight_range] = per_type.get(weight_range, 0) + row.quantity

    return [
        AggregatedStock(
            lobster_type=name,
            total_quantity=type_totals[name],
            weight_classes=[
                WeightClassQuantity(weight_range=weight_range, quantity=quantity)
                for weight_range, quantity in sorted(per_type.items())
            ],
        )
        for name, per_type in sorted(grouped.items())
    ]


def _shift_month(year: int, month: int, offset: int) -> tuple[int, int]:
    shifted_year, month_index = divmod(year * 12 + (month - 1) + offset, 12)
    return shifted_year, month_index + 1


def month_buckets(today: dt.date, count: int = TRAILING_MONTHS) -> list[tuple[int, int]]:
    """``count`` consecutive (year, month) pairs ending at ``today``'s month, oldest first."""

    return [_shift_month(today.year, today.month, -offset) for offset in range(count - 1, -1, -1)]


def month_bounds(today: dt.date) -> tuple[dt.date, dt.date]:
    last_day = calendar.monthrange(today.year, today.month)[1]
    return dt.date(today.year, today.month, 1), dt.date(today.year, today.month, last_day)


def six_month_window(today: dt.date) -> tuple[dt.date, dt.date]:
    oldest_year, oldest_month = month_buckets(today)[0]
    return dt.date(oldest_year, oldest_month, 1), month_bounds(today)[1]


def flow_totals(transactions: Iterable[TransactionRow]) -> FlowTotals:
    incoming = 0
    outgoing = 0
    for tx in transactions:
        if tx.transaction_type == "ADD":
            incoming += tx.quantity
        elif tx.transaction_type in OUTGOING_TYPES:
            outgoing += abs(tx.quantity)
    return FlowTotals(incoming=incoming, outgoing=outgoing)


def _month_key(tx: TransactionRow) -> tuple[int, int]:
    return tx.transaction_date.year, tx.transaction_date.month


def this_month_flow(transactions: Iterable[TransactionRow], today: dt.date) -> FlowTotals:
    current = (today.year, today.month)
    return flow_totals(tx for tx in transactions if _month_key(tx) == current)


def monthly_series(transactions: Iterable[TransactionRow], today: dt.date) -> list[MonthlyPoint]:
    buckets: dict[tuple[int, int], list[TransactionRow]] = {key: [] for key in month_buckets(today)}
    for tx in transactions:
        bucket = buckets.get(_month_key(tx))
        if bucket is not None:
            bucket.append(tx)

    series = []
    for (year, month), bucket in buckets.items():
        totals = flow_totals(bucket)
        series.append(
            MonthlyPoint(
                month_label=calendar.month_name[month],
                year=year,
                month=month,
                incoming=totals.incoming,
                outgoing=totals.outgoing,
            )
        )
    return series


def distribution_by_type(
    transactions: Iterable[TransactionRow], type_names: Mapping[uuid.UUID, str]
) -> list[DistributionPoint]:
    totals: dict[str, int] = {}
    for tx in transactions:
        if tx.transaction_type not in OUTGOING_TYPES:
            continue
        name = type_names.get(tx.type_id, UNKNOWN)
        totals[name] = totals.get(name, 0) + abs(tx.quantity)
    return [DistributionPoint(lobster_type=name, quantity=quantity) for name, quantity in sorted(totals.items())]
