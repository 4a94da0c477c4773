"""Change notifications for the ledger tables.

``ChangeFeed`` is the in-process hub; ``PostgresNotifyBridge`` feeds it from a
PostgreSQL ``LISTEN`` channel; ``ChangeFeedListener`` turns bursts of events into
one debounced refresh.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Optional

import asyncpg

from .scheduling import Debouncer

logger = logging.getLogger("lobster-dashboard.feed")

INSERT = "INSERT"
UPDATE = "UPDATE"
LEDGER_TABLES = ("inventory", "transactions")


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event: str
    record_id: Optional[str] = None


# Handlers may be plain callables or coroutine functions; awaitables are run as tasks.
Handler = Callable[[ChangeEvent], Optional[Awaitable[None]]]

CONNECT_ERRORS = (OSError, asyncpg.PostgresError, asyncpg.InterfaceError, asyncio.TimeoutError)
RECONNECT_DELAYS = (1.0, 2.0, 5.0, 10.0, 30.0)


class FeedSubscription:
    def __init__(self, feed: "ChangeFeed", table: str, events: frozenset[str], handler: Handler) -> None:
        self._feed = feed
        self.table = table
        self.events = events
        self.handler = handler
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        return not self.closed and event.table == self.table and event.event in self.events

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._remove(self)


class ChangeFeed:
    def __init__(self) -> None:
        self._subscriptions: list[FeedSubscription] = []
        self._tasks: set[asyncio.Future] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, table: str, events: Iterable[str], handler: Handler) -> FeedSubscription:
        subscription = FeedSubscription(self, table, frozenset(events), handler)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                result = subscription.handler(event)
            except Exception:
                logger.exception("Change feed handler failed for %s %s", event.event, event.table)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(lambda done, event=event: self._handler_done(done, event))

    def _handler_done(self, task: asyncio.Future, event: ChangeEvent) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Change feed handler failed for %s %s",
                event.event,
                event.table,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    def _remove(self, subscription: FeedSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)


def asyncpg_dsn(database_url: str) -> str:
    """Strip the SQLAlchemy driver suffix so asyncpg accepts the URL."""

    return database_url.replace("postgresql+asyncpg://", "postgresql://", 1)


def parse_notification(payload: str) -> Optional[ChangeEvent]:
    try:
        data = json.loads(payload)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    table = data.get("table")
    event = str(data.get("event") or data.get("type") or "").upper()
    if not isinstance(table, str) or event not in {INSERT, UPDATE}:
        return None
    record_id = data.get("id")
    return ChangeEvent(table=table, event=event, record_id=str(record_id) if record_id is not None else None)


class PostgresNotifyBridge:
    """Republish ``pg_notify`` payloads from ``channel`` onto a :class:`ChangeFeed`.

    When the ``LISTEN`` connection terminates the bridge reconnects in the
    background, waiting ``reconnect_delays[n]`` before attempt ``n`` and
    repeating the last delay until it succeeds or :meth:`stop` is called.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        dsn: str,
        channel: str,
        *,
        reconnect_delays: Sequence[float] = RECONNECT_DELAYS,
    ) -> None:
        self._feed = feed
        self._dsn = dsn
        self._channel = channel
        self._delays = tuple(reconnect_delays) or (0.0,)
        self._connection: Optional[asyncpg.Connection] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed()

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def start(self) -> None:
        self._stopping = False
        await self._connect()
        logger.info("Listening for ledger changes on %s", self._channel)

    def schedule_reconnect(self) -> None:
        if self._stopping or self.reconnecting:
            return
        self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def stop(self) -> None:
        self._stopping = True
        if self._reconnect_task is not None:
            task, self._reconnect_task = self._reconnect_task, None
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        try:
            await connection.remove_listener(self._channel, self._on_notify)
        finally:
            await connection.close()

    async def _connect(self) -> None:
        connection = await asyncpg.connect(self._dsn)
        try:
            await connection.add_listener(self._channel, self._on_notify)
        except Exception:
            await connection.close()
            raise
        connection.add_termination_listener(self._on_terminated)
        self._connection = connection

    def _on_terminated(self, connection: Any) -> None:
        if self._stopping or connection is not self._connection:
            return
        self._connection = None
        logger.warning("Lost the ledger change connection on %s, reconnecting", self._channel)
        self.schedule_reconnect()

    async def _reconnect(self) -> None:
        attempt = 0
        while not self._stopping:
            await asyncio.sleep(self._delays[min(attempt, len(self._delays) - 1)])
            attempt += 1
            try:
                await self._connect()
            except CONNECT_ERRORS as exc:
                logger.warning("Reconnect attempt %d on %s failed: %s", attempt, self._channel, exc)
                continue
            logger.info("Listening for ledger changes on %s again after %d attempt(s)", self._channel, attempt)
            return

    def _on_notify(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        event = parse_notification(payload)
        if event is None:
            logger.warning("Ignoring malformed notification on %s: %r", channel, payload)
            return
        self._feed.publish(event)


class ChangeFeedListener:
    """Debounced refresh trigger for INSERT/UPDATE events on the ledger tables.

    ``on_change`` receives the last event of each burst. Its failures are logged
    and swallowed so that the next burst still triggers a run.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        on_change: Callable[[ChangeEvent], Awaitable[None]],
        debounce_s: float,
        tables: Iterable[str] = LEDGER_TABLES,
    ) -> None:
        self._feed = feed
        self._on_change = on_change
        self._tables = tuple(tables)
        self._debouncer = Debouncer(self._run, debounce_s)
        self._subscriptions: list[FeedSubscription] = []

    @property
    def is_open(self) -> bool:
        return bool(self._subscriptions)

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    def open(self) -> None:
        if self._subscriptions:
            return
        for table in self._tables:
            self._subscriptions.append(self._feed.subscribe(table, (INSERT, UPDATE), self._on_event))

    def close(self) -> None:
        self._debouncer.cancel()
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()

    def _on_event(self, event: ChangeEvent) -> None:
        self._debouncer.trigger(event)

    async def _run(self, event: ChangeEvent) -> None:
        try:
            await self._on_change(event)
        except Exception:
            logger.exception("Refresh after %s on %s failed", event.event, event.table)
