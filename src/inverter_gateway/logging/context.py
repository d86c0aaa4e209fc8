"""Log context enrichment utilities.

HTTP requests bind ``request_id``/``path`` in middleware and ``device_id``
in the route; background work (broker listener, poll loop) scopes
``device_id`` with ``device_context`` so it never leaks into the next
message handled by the same task.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import structlog


def bind_context(**kwargs: object) -> None:
    """Bind key-value pairs to the current logging context (task-local)."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear the current logging context."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def device_context(device_id: str, **extra: object) -> Iterator[None]:
    """Bind ``device_id`` for the duration of a block, restoring prior values."""
    with structlog.contextvars.bound_contextvars(device_id=device_id, **extra):
        yield
