import datetime as dt
import uuid

from lobster_dashboard import aggregator
from lobster_dashboard.schemas import InventoryRow, TransactionRow

A = uuid.uuid4()
B = uuid.uuid4()
W100 = uuid.uuid4()
W200 = uuid.uuid4()
TYPE_NAMES = {A: "A", B: "B"}
WEIGHT_RANGES = {W100: "100-200", W200: "200-300"}


def _tx(transaction_type: str, quantity: int, when: dt.datetime, type_id: uuid.UUID = A) -> TransactionRow:
    return TransactionRow(
        id=uuid.uuid4(),
        type_id=type_id,
        weight_class_id=W100,
        transaction_type=transaction_type,
        quantity=quantity,
        transaction_date=when.replace(tzinfo=dt.timezone.utc),
    )


def _inventory() -> list[InventoryRow]:
    return [
        InventoryRow(type_id=A, weight_class_id=W100, quantity=10),
        InventoryRow(type_id=A, weight_class_id=W200, quantity=5),
        InventoryRow(type_id=B, weight_class_id=W100, quantity=3),
    ]


def test_stock_by_type_partitions_total() -> None:
    rows = _inventory()

    by_type = aggregator.stock_by_type(rows, TYPE_NAMES)

    assert [(item.lobster_type, item.total_quantity) for item in by_type] == [("A", 15), ("B", 3)]
    assert aggregator.total_stock(rows) == 18
    assert sum(item.total_quantity for item in by_type) == aggregator.total_stock(rows)


def test_breakdown_totals_match_stock_by_type() -> None:
    rows = iter(_inventory())

    breakdown = aggregator.stock_breakdown(rows, TYPE_NAMES, WEIGHT_RANGES, include_empty=False)

    assert [(item.lobster_type, item.total_quantity) for item in breakdown] == [
        (item.lobster_type, item.total_quantity) for item in aggregator.stock_by_type(_inventory(), TYPE_NAMES)
    ]
    assert [len(item.weight_classes) for item in breakdown] == [2, 1]


def test_unresolved_ids_are_grouped_as_unknown() -> None:
    rows = _inventory() + [InventoryRow(type_id=uuid.uuid4(), weight_class_id=uuid.uuid4(), quantity=7)]

    breakdown = aggregator.stock_breakdown(rows, TYPE_NAMES, WEIGHT_RANGES, include_empty=True)

    unknown = next(item for item in breakdown if item.lobster_type == aggregator.UNKNOWN)
    assert unknown.total_quantity == 7
    assert unknown.weight_classes[0].weight_range == aggregator.UNKNOWN


def test_stock_breakdown_skips_empty_rows_unless_asked() -> None:
    rows = _inventory() + [InventoryRow(type_id=B, weight_class_id=W200, quantity=0)]

    compact = aggregator.stock_breakdown(rows, TYPE_NAMES, WEIGHT_RANGES, include_empty=False)
    full = aggregator.stock_breakdown(rows, TYPE_NAMES, WEIGHT_RANGES, include_empty=True)

    assert [wc.weight_range for wc in compact[1].weight_classes] == ["100-200"]
    assert [wc.weight_range for wc in full[1].weight_classes] == ["100-200", "200-300"]
    assert compact[0].weight_classes[0].quantity == 10


def test_aggregation_does_not_depend_on_row_order() -> None:
    rows = _inventory()

    forward = aggregator.stock_breakdown(rows, TYPE_NAMES, WEIGHT_RANGES, include_empty=True)
    backward = aggregator.stock_breakdown(list(reversed(rows)), TYPE_NAMES, WEIGHT_RANGES, include_empty=True)

    assert forward == backward


def test_this_month_flow_worked_example() -> None:
    today = dt.date(2024, 1, 25)
    transactions = [
        _tx("ADD", 10, dt.datetime(2024, 1, 15, 9)),
        _tx("DISTRIBUTE", 4, dt.datetime(2024, 1, 20, 9)),
        _tx("ADD", 99, dt.datetime(2023, 12, 31, 9)),
    ]

    flow = aggregator.this_month_flow(transactions, today)

    assert (flow.incoming, flow.outgoing) == (10, 4)


def test_outgoing_counts_magnitude_of_signed_quantities() -> None:
    flow = aggregator.flow_totals([_tx("DEATH", -2, dt.datetime(2024, 1, 3)), _tx("DAMAGED", 3, dt.datetime(2024, 1, 4))])

    assert flow.outgoing == 5
    assert flow.incoming == 0


def test_month_buckets_are_six_consecutive_months_ending_now() -> None:
    buckets = aggregator.month_buckets(dt.date(2024, 3, 10))

    assert buckets == [(2023, 10), (2023, 11), (2023, 12), (2024, 1), (2024, 2), (2024, 3)]


def test_six_month_window_covers_whole_months() -> None:
    start, end = aggregator.six_month_window(dt.date(2024, 2, 10))

    assert start == dt.date(2023, 9, 1)
    assert end == dt.date(2024, 2, 29)


def test_monthly_series_buckets_by_year_and_month() -> None:
    today = dt.date(2024, 3, 10)
    transactions = [
        _tx("ADD", 10, dt.datetime(2024, 3, 1)),
        _tx("ADD", 7, dt.datetime(2023, 3, 1)),
        _tx("DISTRIBUTE", 4, dt.datetime(2023, 12, 31, 23)),
        _tx("ADD", 2, dt.datetime(2023, 9, 30)),
    ]

    series = aggregator.monthly_series(transactions, today)

    assert len(series) == 6
    assert [point.month_label for point in series] == ["October", "November", "December", "January", "February", "March"]
    by_key = {(point.year, point.month): point for point in series}
    assert by_key[(2024, 3)].incoming == 10
    assert by_key[(2023, 12)].outgoing == 4
    # March 2023 and September 2023 fall outside the window.
    assert sum(point.incoming for point in series) == 10


def test_distribution_by_type_ignores_incoming() -> None:
    transactions = [
        _tx("DISTRIBUTE", 4, dt.datetime(2024, 1, 2)),
        _tx("DEATH", 1, dt.datetime(2024, 1, 3), type_id=B),
        _tx("ADD", 50, dt.datetime(2024, 1, 4)),
        _tx("DAMAGED", 2, dt.datetime(2024, 1, 5)),
    ]

    distribution = aggregator.distribution_by_type(transactions, TYPE_NAMES)

    assert [(point.lobster_type, point.quantity) for point in distribution] == [("A", 6), ("B", 1)]
