"""Per-shipment mutual exclusion within one process."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class ShipmentLockRegistry:
    """Keyed asyncio locks, created on demand and dropped when idle.

    Keys are "booking:<key>" around find-or-create and "shipment:<id>" around
    linking, field backfill and workflow advancement. A message enters each
    key at most once, booking before shipment, and keeps both until its
    transaction commits; the shipment row lock (SELECT ... FOR UPDATE) taken
    inside is therefore always released first. Row locks alone cover other
    processes.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def shipment(self, shipment_id):
        return self.hold(f"shipment:{shipment_id}")

    def booking(self, booking_key: str):
        return self.hold(f"booking:{booking_key}")

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)
