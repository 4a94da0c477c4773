"""In-memory cache for the slow-changing reference tables.

Lobster types and weight classes are loaded once per cache lifetime. Concurrent
first calls share one in-flight load per table; a failed load is not cached, so
the next call retries. ``clear()`` drops both tables and detaches any load that
is still running, which then answers its own waiters without touching the cache.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Optional

from .schemas import LobsterType, WeightClass

logger = logging.getLogger("lobster-dashboard.cache")

LOBSTER_TYPES = "lobster_types"
WEIGHT_CLASSES = "weight_classes"

Loader = Callable[[], Awaitable[Iterable[Any]]]


class ReferenceDataCache:
    def __init__(self, load_lobster_types: Loader, load_weight_classes: Loader) -> None:
        self._loaders: dict[str, Loader] = {
            LOBSTER_TYPES: load_lobster_types,
            WEIGHT_CLASSES: load_weight_classes,
        }
        self._sort_keys: dict[str, Callable[[Any], str]] = {
            LOBSTER_TYPES: lambda row: row.name,
            WEIGHT_CLASSES: lambda row: row.weight_range,
        }
        self._values: dict[str, tuple[Any, ...]] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._generation = 0

    async def get_lobster_types(self) -> tuple[LobsterType, ...]:
        return await self._get(LOBSTER_TYPES)

    async def get_weight_classes(self) -> tuple[WeightClass, ...]:
        return await self._get(WEIGHT_CLASSES)

    def clear(self) -> None:
        self._values.clear()
        self._inflight.clear()
        self._generation += 1
        logger.info("Reference data cache cleared")

    async def type_names(self) -> dict[uuid.UUID, str]:
        return {row.id: row.name for row in await self.get_lobster_types()}

    async def weight_ranges(self) -> dict[uuid.UUID, str]:
        return {row.id: row.weight_range for row in await self.get_weight_classes()}

    async def find_lobster_type(self, name: str) -> Optional[LobsterType]:
        return next((row for row in await self.get_lobster_types() if row.name == name), None)

    async def find_weight_class(self, weight_range: str) -> Optional[WeightClass]:
        return next((row for row in await self.get_weight_classes() if row.weight_range == weight_range), None)

    async def _get(self, key: str) -> tuple[Any, ...]:
        cached = self._values.get(key)
        if cached is not None:
            return cached
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key, self._generation))
            self._inflight[key] = task
        # A cancelled waiter must not cancel the load shared with other waiters.
        return await asyncio.shield(task)

    async def _load(self, key: str, generation: int) -> tuple[Any, ...]:
        try:
            rows = tuple(sorted(await self._loaders[key](), key=self._sort_keys[key]))
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]
        if generation == self._generation:
            self._values[key] = rows
            logger.debug("Cached %d %s", len(rows), key)
        return rows
