"""Refresh cycles and live dashboard views.

A refresh cycle loads reference data, runs its sub-fetches concurrently and only
aggregates once every one of them has succeeded; a failed cycle leaves the
previously published snapshot untouched.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import itertools
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Optional

from . import aggregator
from .auth import SIGNED_OUT
from .cache import ReferenceDataCache
from .config import DEBOUNCE_S, FETCH_TIMEOUT_S
from .errors import LedgerError
from .feed import ChangeEvent, ChangeFeed, ChangeFeedListener
from .ledger import LedgerFetcher, bounded, bounded_or_default
from .scheduling import ScheduledTask, schedule
from .schemas import DashboardSnapshot, StockOverview, WeightClassQuantity

logger = logging.getLogger("lobster-dashboard.dashboard")

Publish = Callable[[DashboardSnapshot], Awaitable[None]]


class DashboardService:
    def __init__(
        self,
        fetcher: LedgerFetcher,
        cache: ReferenceDataCache,
        *,
        timeout: float = FETCH_TIMEOUT_S,
        today: Optional[Callable[[], dt.date]] = None,
    ) -> None:
        self._fetcher = fetcher
        self._cache = cache
        self._timeout = timeout
        self._today = today or (lambda: dt.datetime.now(fetcher.tz).date())

    async def _reference(self) -> tuple[dict[uuid.UUID, str], dict[uuid.UUID, str]]:
        return await asyncio.gather(
            bounded(self._cache.type_names(), self._timeout, "lobster types"),
            bounded(self._cache.weight_ranges(), self._timeout, "weight classes"),
        )

    async def build_snapshot(self) -> DashboardSnapshot:
        today = self._today()
        month_start, month_end = aggregator.month_bounds(today)
        window_start, window_end = aggregator.six_month_window(today)
        type_names, weight_ranges = await self._reference()

        inventory, month_tx, outgoing_tx, window_tx = await asyncio.gather(
            bounded(self._fetcher.fetch_inventory_snapshot(), self._timeout, "inventory snapshot"),
            bounded(
                self._fetcher.fetch_transactions_in_range(month_start, month_end),
                self._timeout,
                "this month's transactions",
            ),
            bounded(self._fetcher.fetch_outgoing_transactions(), self._timeout, "outgoing transactions"),
            bounded(
                self._fetcher.fetch_transactions_in_range(window_start, window_end),
                self._timeout,
                "six month transactions",
            ),
        )

        flow = aggregator.this_month_flow(month_tx, today)
        return DashboardSnapshot(
            total_stock=aggregator.total_stock(inventory),
            incoming_this_month=flow.incoming,
            outgoing_this_month=flow.outgoing,
            stock_by_type=aggregator.stock_breakdown(inventory, type_names, weight_ranges, include_empty=True),
            monthly=aggregator.monthly_series(window_tx, today),
            distribution=aggregator.distribution_by_type(outgoing_tx, type_names),
            generated_at=dt.datetime.now(dt.timezone.utc),
        )

    async def build_stock_overview(self) -> StockOverview:
        type_names, weight_ranges = await self._reference()
        inventory = await bounded(self._fetcher.fetch_inventory_snapshot(), self._timeout, "inventory snapshot")
        return StockOverview(
            total_stock=aggregator.total_stock(inventory),
            stock=aggregator.stock_breakdown(inventory, type_names, weight_ranges, include_empty=False),
        )

    async def weight_class_breakdown(self, lobster_type: str, *, include_empty: bool) -> Optional[list[WeightClassQuantity]]:
        """Breakdown for one type by name; ``None`` when the name is unknown, empty on fetch failure."""

        found = await self._cache.find_lobster_type(lobster_type)
        if found is None:
            return None
        if include_empty:
            fetch = self._fetcher.fetch_all_weight_classes(found.id)
        else:
            fetch = self._fetcher.fetch_stocked_weight_classes(found.id)
        return await bounded_or_default(fetch, self._timeout, f"weight classes of {lobster_type}", [])


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class DashboardView:
    """One live consumer of dashboard snapshots, open between ``open()`` and ``close()``.

    A view opened with ``expires_at`` belongs to a session that ends at that
    instant: it closes itself then and never fetches or publishes afterwards.
    """

    def __init__(
        self,
        service: DashboardService,
        feed: ChangeFeed,
        publish: Publish,
        *,
        debounce_s: float = DEBOUNCE_S,
        user_id: Optional[uuid.UUID] = None,
        on_closed: Optional[Callable[[], Awaitable[None]]] = None,
        expires_at: Optional[dt.datetime] = None,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self.user_id = user_id
        self.expires_at = expires_at
        self.snapshot: Optional[DashboardSnapshot] = None
        self._service = service
        self._publish = publish
        self._on_closed = on_closed
        self._clock = clock
        self._listener = ChangeFeedListener(feed, self._on_change, debounce_s)
        self._expiry: Optional[ScheduledTask] = None
        self._session_ended = False
        self._closed = False
        self._sequence = itertools.count(1)
        self._applied = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def expired(self) -> bool:
        if self._session_ended:
            return True
        return self.expires_at is not None and self._clock() >= self.expires_at

    async def open(self) -> None:
        if self.expires_at is not None:
            remaining = (self.expires_at - self._clock()).total_seconds()
            self._expiry = schedule(self._expire, max(remaining, 0.0))
        # Subscribe before the first fetch so changes made during it still trigger a refresh.
        self._listener.open()
        await self.refresh()

    async def refresh(self) -> bool:
        if self._closed:
            return False
        if self.expired:
            await self._expire()
            return False
        sequence = next(self._sequence)
        try:
            snapshot = await self._service.build_snapshot()
        except LedgerError as exc:
            logger.warning("Dashboard refresh failed, keeping previous snapshot: %s", exc)
            return False
        if self._closed or sequence < self._applied:
            return False
        if self.expired:
            await self._expire()
            return False
        self._applied = sequence
        self.snapshot = snapshot
        await self._publish(snapshot)
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._expiry is not None:
            self._expiry.cancel()
        self._listener.close()
        if self._on_closed is not None:
            await self._on_closed()

    async def _expire(self) -> None:
        # The timer can fire a hair before the wall clock reaches expires_at.
        self._session_ended = True
        if not self._closed:
            logger.info("Session behind live dashboard of %s expired", self.user_id)
        await self.close()

    async def _on_change(self, event: ChangeEvent) -> None:
        logger.debug("Refreshing after %s on %s", event.event, event.table)
        await self.refresh()


class ViewRegistry:
    """Open dashboard views grouped by user."""

    def __init__(self, service: DashboardService, feed: ChangeFeed, *, debounce_s: float = DEBOUNCE_S) -> None:
        self._service = service
        self._feed = feed
        self._debounce_s = debounce_s
        self._views: dict[uuid.UUID, set[DashboardView]] = {}

    def views_for(self, user_id: uuid.UUID) -> list[DashboardView]:
        return list(self._views.get(user_id, ()))

    def open_view(
        self,
        user_id: uuid.UUID,
        publish: Publish,
        on_closed: Optional[Callable[[], Awaitable[None]]] = None,
        expires_at: Optional[dt.datetime] = None,
    ) -> DashboardView:
        view = DashboardView(
            self._service,
            self._feed,
            publish,
            debounce_s=self._debounce_s,
            user_id=user_id,
            on_closed=on_closed,
            expires_at=expires_at,
        )
        self._views.setdefault(user_id, set()).add(view)
        return view

    async def close_view(self, view: DashboardView) -> None:
        views = self._views.get(view.user_id)
        if views is not None:
            views.discard(view)
            if not views:
                del self._views[view.user_id]
        await view.close()

    async def refresh_user(self, user_id: uuid.UUID) -> None:
        for view in self.views_for(user_id):
            await view.refresh()

    async def close_user(self, user_id: uuid.UUID) -> None:
        for view in self.views_for(user_id):
            await self.close_view(view)

    async def close_all(self) -> None:
        for user_id in list(self._views):
            await self.close_user(user_id)

    async def on_auth_state_change(self, event: str, user_id: uuid.UUID) -> None:
        if event == SIGNED_OUT:
            await self.close_user(user_id)
