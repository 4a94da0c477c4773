import asyncio
import datetime as dt
import uuid

import pytest

from lobster_dashboard.auth import SIGNED_IN, SIGNED_OUT
from lobster_dashboard.cache import ReferenceDataCache
from lobster_dashboard.dashboard import DashboardService, DashboardView, ViewRegistry
from lobster_dashboard.errors import FetchTimeout, LedgerError
from lobster_dashboard.feed import INSERT, ChangeEvent, ChangeFeed

TODAY = dt.date(2024, 1, 25)


def _service(ledger, timeout: float = 1.0) -> DashboardService:
    cache = ReferenceDataCache(ledger.fetch_lobster_types, ledger.fetch_weight_classes)
    return DashboardService(ledger, cache, timeout=timeout, today=lambda: TODAY)


def test_snapshot_combines_all_metrics(ledger) -> None:
    ledger.add_transaction("Mutiara", "100-200", "ADD", 10, dt.datetime(2024, 1, 15, 8))
    ledger.add_transaction("Mutiara", "100-200", "DISTRIBUTE", 4, dt.datetime(2024, 1, 20, 8), destination="Jakarta")
    ledger.add_transaction("Pasir", "100-200", "DEATH", 1, dt.datetime(2023, 11, 2, 8), destination="Farm")

    snapshot = asyncio.run(_service(ledger).build_snapshot())

    assert snapshot.total_stock == 18
    assert (snapshot.incoming_this_month, snapshot.outgoing_this_month) == (10, 4)
    assert [(item.lobster_type, item.total_quantity) for item in snapshot.stock_by_type] == [
        ("Mutiara", 15),
        ("Pasir", 3),
    ]
    assert [(point.year, point.month) for point in snapshot.monthly][-1] == (2024, 1)
    assert len(snapshot.monthly) == 6
    assert [(point.lobster_type, point.quantity) for point in snapshot.distribution] == [("Mutiara", 4), ("Pasir", 1)]


@pytest.mark.parametrize(
    "failing",
    ["fetch_inventory_snapshot", "fetch_outgoing_transactions", "fetch_transactions_in_range", "fetch_weight_classes"],
)
def test_any_failed_sub_fetch_voids_the_cycle(ledger, failing: str) -> None:
    ledger.fail.add(failing)

    with pytest.raises(LedgerError):
        asyncio.run(_service(ledger).build_snapshot())


def test_slow_sub_fetch_times_out(ledger) -> None:
    ledger.delay["fetch_inventory_snapshot"] = 0.2

    with pytest.raises(FetchTimeout):
        asyncio.run(_service(ledger, timeout=0.05).build_snapshot())


def test_stock_overview_hides_empty_classes(ledger) -> None:
    ledger.set_stock("Pasir", "300-400", 0)

    overview = asyncio.run(_service(ledger).build_stock_overview())

    pasir = next(item for item in overview.stock if item.lobster_type == "Pasir")
    assert [wc.weight_range for wc in pasir.weight_classes] == ["100-200"]
    assert overview.total_stock == 18


def test_weight_class_breakdown_modes(ledger) -> None:
    service = _service(ledger)

    async def scenario():
        return (
            await service.weight_class_breakdown("Mutiara", include_empty=False),
            await service.weight_class_breakdown("Mutiara", include_empty=True),
            await service.weight_class_breakdown("Bambu", include_empty=True),
        )

    stocked, full, unknown = asyncio.run(scenario())

    assert [(wc.weight_range, wc.quantity) for wc in stocked] == [("100-200", 10), ("200-300", 5)]
    assert [(wc.weight_range, wc.quantity) for wc in full] == [("100-200", 10), ("200-300", 5), ("300-400", 0)]
    assert unknown is None


def test_weight_class_breakdown_is_empty_on_fetch_failure(ledger) -> None:
    ledger.fail.add("fetch_stocked_weight_classes")

    result = asyncio.run(_service(ledger).weight_class_breakdown("Mutiara", include_empty=False))

    assert result == []


def test_view_keeps_previous_snapshot_when_refresh_fails(ledger) -> None:
    published = []

    async def publish(snapshot) -> None:
        published.append(snapshot)

    async def scenario():
        view = DashboardView(_service(ledger), ChangeFeed(), publish, debounce_s=0.01)
        await view.open()
        first = view.snapshot
        ledger.fail.add("fetch_inventory_snapshot")
        refreshed = await view.refresh()
        await view.close()
        return first, refreshed, view.snapshot

    first, refreshed, current = asyncio.run(scenario())

    assert refreshed is False
    assert current is first
    assert len(published) == 1


def test_view_refreshes_once_after_a_burst_of_changes(ledger) -> None:
    feed = ChangeFeed()
    published = []

    async def publish(snapshot) -> None:
        published.append(snapshot)

    async def scenario():
        view = DashboardView(_service(ledger), feed, publish, debounce_s=0.05)
        await view.open()
        for _ in range(5):
            ledger.set_stock("Pasir", "100-200", ledger.inventory[-1].quantity + 1)
            feed.publish(ChangeEvent("inventory", INSERT))
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.15)
        await view.close()

    asyncio.run(scenario())

    assert len(published) == 2
    assert published[-1].total_stock == 23


def test_closed_view_never_publishes_in_flight_cycle(ledger) -> None:
    ledger.delay["fetch_inventory_snapshot"] = 0.05
    published = []

    async def publish(snapshot) -> None:
        published.append(snapshot)

    async def scenario():
        view = DashboardView(_service(ledger), ChangeFeed(), publish, debounce_s=0.01)
        refreshing = asyncio.ensure_future(view.refresh())
        await asyncio.sleep(0.01)
        await view.close()
        return await refreshing

    assert asyncio.run(scenario()) is False
    assert published == []


def test_registry_closes_views_on_sign_out(ledger) -> None:
    feed = ChangeFeed()
    user_id = uuid.uuid4()
    other_id = uuid.uuid4()
    closed = []

    async def publish(snapshot) -> None:
        return None

    async def scenario():
        registry = ViewRegistry(_service(ledger), feed, debounce_s=0.01)
        mine = registry.open_view(user_id, publish, on_closed=lambda: _record(closed, "mine"))
        theirs = registry.open_view(other_id, publish)
        await mine.open()
        await theirs.open()
        await registry.on_auth_state_change(SIGNED_IN, user_id)
        assert not mine.closed
        await registry.on_auth_state_change(SIGNED_OUT, user_id)
        return registry, mine, theirs

    registry, mine, theirs = asyncio.run(scenario())

    assert mine.closed
    assert not theirs.closed
    assert closed == ["mine"]
    assert registry.views_for(user_id) == []
    assert feed.subscriber_count == 2


async def _record(target: list, value: str) -> None:
    target.append(value)


def test_view_closes_itself_when_the_session_expires(ledger) -> None:
    published = []
    closed = []

    async def publish(snapshot) -> None:
        published.append(snapshot)

    async def scenario():
        expires_at = dt.datetime.now(dt.timezone.utc) + dt.timedelta(seconds=0.05)
        view = DashboardView(
            _service(ledger),
            ChangeFeed(),
            publish,
            debounce_s=0.01,
            on_closed=lambda: _record(closed, "expired"),
            expires_at=expires_at,
        )
        await view.open()
        await asyncio.sleep(0.15)
        return view, await view.refresh()

    view, refreshed = asyncio.run(scenario())

    assert view.closed
    assert view.expired
    assert refreshed is False
    assert len(published) == 1
    assert closed == ["expired"]


def test_expired_view_is_refused_a_snapshot(ledger) -> None:
    feed = ChangeFeed()
    published = []
    start = dt.datetime(2024, 1, 25, 8, tzinfo=dt.timezone.utc)
    now = [start]

    async def publish(snapshot) -> None:
        published.append(snapshot)

    async def scenario():
        view = DashboardView(
            _service(ledger),
            feed,
            publish,
            debounce_s=0.01,
            expires_at=start + dt.timedelta(hours=1),
            clock=lambda: now[0],
        )
        await view.open()
        fetches = ledger.calls["fetch_inventory_snapshot"]
        now[0] = start + dt.timedelta(hours=2)
        refreshed = await view.refresh()
        return view, refreshed, fetches

    view, refreshed, fetches = asyncio.run(scenario())

    assert refreshed is False
    assert view.closed
    assert len(published) == 1
    assert ledger.calls["fetch_inventory_snapshot"] == fetches
    assert feed.subscriber_count == 0


def test_registry_passes_session_expiry_to_views(ledger) -> None:
    expires_at = dt.datetime(2030, 1, 1, tzinfo=dt.timezone.utc)

    async def publish(snapshot) -> None:
        return None

    registry = ViewRegistry(_service(ledger), ChangeFeed(), debounce_s=0.01)
    view = registry.open_view(uuid.uuid4(), publish, expires_at=expires_at)

    assert view.expires_at == expires_at
    assert not view.expired
