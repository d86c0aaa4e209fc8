"""Most-recent live sample per device."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from inverter_gateway.live.sample import RealtimeSample

logger = logging.getLogger(__name__)


class LiveCache:
    """Keyed store of the latest RealtimeSample per device.

    Entries are immutable samples, so a read always returns one complete
    prior ``put``. A later ``put`` replaces the entry wholesale. There is no
    eviction; readers judge staleness from ``received_at``.

    Waiters block on a per-device event that is swapped out on every
    ``put``, so a wake-up never carries over to the next wait. Events exist
    only while someone waits on them.
    """

    def __init__(self, storage: dict[str, RealtimeSample] | None = None) -> None:
        self._samples: dict[str, RealtimeSample] = storage if storage is not None else {}
        self._events: dict[str, asyncio.Event] = {}
        self._waiting: dict[str, int] = {}

    def put(self, device_id: str, sample: RealtimeSample) -> None:
        self._samples[device_id] = sample
        event = self._events.pop(device_id, None)
        if event is not None:
            event.set()

    def get(self, device_id: str) -> RealtimeSample | None:
        return self._samples.get(device_id)

    def has(self, device_id: str) -> bool:
        return device_id in self._samples

    def age_seconds(self, device_id: str, now: datetime | None = None) -> float | None:
        sample = self._samples.get(device_id)
        return None if sample is None else sample.age_seconds(now)

    def get_fresh(self, device_id: str, max_age_seconds: float) -> RealtimeSample | None:
        """The cached sample if it is no older than ``max_age_seconds``."""
        sample = self._samples.get(device_id)
        if sample is None or sample.age_seconds() > max_age_seconds:
            return None
        return sample

    async def wait_for(self, device_id: str, timeout: float) -> RealtimeSample | None:
        """Wait up to ``timeout`` seconds for the next ``put`` on a device.

        Returns the new sample, or None on timeout. Cancellation of the
        caller propagates immediately.
        """
        if timeout <= 0:
            return None
        event = self._events.get(device_id)
        if event is None:
            event = self._events[device_id] = asyncio.Event()
        self._waiting[device_id] = self._waiting.get(device_id, 0) + 1
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self._release_waiter(device_id)
        return self._samples.get(device_id)

    def _release_waiter(self, device_id: str) -> None:
        left = self._waiting[device_id] - 1
        if left:
            self._waiting[device_id] = left
            return
        # Last waiter gone: no event may outlive it
        del self._waiting[device_id]
        self._events.pop(device_id, None)

    def pending_waits(self) -> int:
        """Number of devices with a caller blocked in ``wait_for``."""
        return len(self._events)

    def devices(self) -> list[str]:
        return list(self._samples)

    def __len__(self) -> int:
        return len(self._samples)
