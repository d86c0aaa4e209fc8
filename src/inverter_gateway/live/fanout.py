"""Push live samples to every subscriber of a device."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import TYPE_CHECKING

from inverter_gateway.live.sample import RealtimeSample

if TYPE_CHECKING:
    from inverter_gateway.live.registry import DeviceWatchRegistry

logger = logging.getLogger(__name__)

_handle_ids = itertools.count(1)


class SubscriberHandle:
    """One client's interest in live samples.

    Handles hash by identity so the same client can watch several devices
    and several clients can watch the same device. ``deliver`` must not
    block; it reports whether the sample was accepted.
    """

    def __init__(self, label: str = "") -> None:
        self.handle_id = next(_handle_ids)
        self.label = label or f"subscriber-{self.handle_id}"
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def deliver(self, device_id: str, sample: RealtimeSample) -> bool:
        return False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.label}>"


class QueueSubscriber(SubscriberHandle):
    """Handle backed by a one-slot queue holding the latest sample.

    A slow reader never sees a backlog: an undelivered sample is replaced
    by the newer one.
    """

    def __init__(self, label: str = "") -> None:
        super().__init__(label)
        self._queue: asyncio.Queue[RealtimeSample] = asyncio.Queue(maxsize=1)

    def deliver(self, device_id: str, sample: RealtimeSample) -> bool:
        if self._closed:
            return False
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(sample)
        return True

    async def next(self, timeout: float | None = None) -> RealtimeSample | None:
        """Next sample, or None when ``timeout`` elapses first."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class FanoutPublisher:
    """Best-effort, at-most-once delivery to a device's current subscribers."""

    def __init__(self, registry: DeviceWatchRegistry) -> None:
        self._registry = registry

    def publish(self, device_id: str, sample: RealtimeSample) -> int:
        """Deliver ``sample`` to each open handle; returns how many took it."""
        delivered = 0
        for handle in self._registry.subscribers(device_id):
            if handle.closed:
                continue
            try:
                if handle.deliver(device_id, sample):
                    delivered += 1
            except Exception:
                logger.exception("Delivery to %r failed for %s", handle, device_id)
        logger.debug("Published %s sample to %d subscriber(s)", device_id, delivered)
        return delivered
