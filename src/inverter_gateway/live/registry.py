"""Reference-counted record of which devices have live subscribers."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from inverter_gateway.live.fanout import SubscriberHandle
from inverter_gateway.live.sample import validate_device_id

logger = logging.getLogger(__name__)

FirstWatchHook = Callable[[str], Awaitable[None]]


class _DeviceLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class DeviceWatchRegistry:
    """Single source of truth for the set of polled devices.

    A device is watched while its handle set is non-empty. Mutations for a
    device are serialised by that device's lock; reads return copies and
    never wait.
    """

    def __init__(
        self,
        storage: dict[str, set[SubscriberHandle]] | None = None,
        on_first_watch: FirstWatchHook | None = None,
    ) -> None:
        self._watchers: dict[str, set[SubscriberHandle]] = storage if storage is not None else {}
        self._locks: dict[str, _DeviceLock] = {}
        self._on_first_watch = on_first_watch

    def set_first_watch_hook(self, hook: FirstWatchHook | None) -> None:
        self._on_first_watch = hook

    @asynccontextmanager
    async def _locked(self, device_id: str) -> AsyncIterator[None]:
        """Hold the device's lock; the lock is discarded with its last user."""
        entry = self._locks.get(device_id)
        if entry is None:
            entry = self._locks[device_id] = _DeviceLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if not entry.users:
                del self._locks[device_id]

    def lock_count(self) -> int:
        return len(self._locks)

    async def subscribe(self, device_id: str, handle: SubscriberHandle) -> bool:
        """Add ``handle`` as a watcher. Returns True on the 0 → 1 transition."""
        validate_device_id(device_id)
        async with self._locked(device_id):
            handles = self._watchers.setdefault(device_id, set())
            first = not handles
            handles.add(handle)
        logger.debug("%r watches %s (%d watcher(s))", handle, device_id, len(handles))

        if first:
            logger.info("Device %s is now watched", device_id)
            await self._fire_first_watch(device_id)
        return first

    async def unsubscribe(self, device_id: str, handle: SubscriberHandle) -> bool:
        """Remove ``handle``. Returns True on the 1 → 0 transition.

        The device leaves the poll set; its cached sample is left alone.
        """
        async with self._locked(device_id):
            handles = self._watchers.get(device_id)
            if not handles or handle not in handles:
                return False
            handles.discard(handle)
            if handles:
                return False
            del self._watchers[device_id]
        logger.info("Device %s is no longer watched", device_id)
        return True

    async def on_subscriber_disconnected(self, handle: SubscriberHandle) -> list[str]:
        """Drop ``handle`` from every device it watched; returns those ids."""
        handle.close()
        devices = [d for d, handles in list(self._watchers.items()) if handle in handles]
        for device_id in devices:
            await self.unsubscribe(device_id, handle)
        return devices

    def is_watched(self, device_id: str) -> bool:
        return bool(self._watchers.get(device_id))

    def watched_devices(self) -> list[str]:
        return [d for d, handles in list(self._watchers.items()) if handles]

    def subscribers(self, device_id: str) -> list[SubscriberHandle]:
        return list(self._watchers.get(device_id, ()))

    def subscriber_count(self, device_id: str) -> int:
        return len(self._watchers.get(device_id, ()))

    async def _fire_first_watch(self, device_id: str) -> None:
        if self._on_first_watch is None:
            return
        try:
            await self._on_first_watch(device_id)
        except Exception:
            logger.exception("Immediate sample request for %s failed", device_id)
