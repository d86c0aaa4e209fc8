"""Upstream source health monitoring."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from inverter_gateway.errors import SourceAttempt

logger = logging.getLogger(__name__)

# Outcomes that say nothing about whether a source is reachable
_NEUTRAL_OUTCOMES = frozenset({"unsupported", "skipped"})
_FAILURE_OUTCOMES = frozenset({"timeout", "unavailable", "malformed"})


@dataclass
class SourceHealth:
    """Health state of a single upstream source."""

    source_id: str
    healthy: bool = True
    last_success: float = 0.0
    last_failure: float = 0.0
    consecutive_failures: int = 0
    total_failures: int = 0
    last_outcome: str = ""

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "last_outcome": self.last_outcome,
            "last_success": self.last_success or None,
            "last_failure": self.last_failure or None,
        }


class HealthChecker:
    """Tracks health of every upstream source.

    Purely observational: the fallback chain never consults it, so an
    unhealthy source is still tried in its priority slot.
    """

    def __init__(self, max_consecutive_failures: int = 3) -> None:
        self._max_failures = max_consecutive_failures
        self._sources: dict[str, SourceHealth] = {}

    def register(self, source_id: str) -> None:
        self._sources.setdefault(source_id, SourceHealth(source_id=source_id))

    def record_success(self, source_id: str, outcome: str = "ok") -> None:
        self.register(source_id)
        s = self._sources[source_id]
        if not s.healthy:
            logger.info("Source '%s' recovered", source_id)
        s.healthy = True
        s.last_success = time.time()
        s.consecutive_failures = 0
        s.last_outcome = outcome

    def record_failure(self, source_id: str, outcome: str = "unavailable") -> None:
        self.register(source_id)
        s = self._sources[source_id]
        s.last_failure = time.time()
        s.consecutive_failures += 1
        s.total_failures += 1
        s.last_outcome = outcome

        if s.healthy and s.consecutive_failures >= self._max_failures:
            s.healthy = False
            logger.warning(
                "Source '%s' marked unhealthy (%d consecutive failures, last: %s)",
                source_id, s.consecutive_failures, outcome,
            )

    def record_attempt(self, attempt: SourceAttempt) -> None:
        """Fold one chain attempt into the health state.

        An "absent" answer still proves the source is reachable.
        """
        if attempt.outcome in _NEUTRAL_OUTCOMES:
            return
        if attempt.outcome in _FAILURE_OUTCOMES:
            self.record_failure(attempt.source_id, attempt.outcome)
        else:
            self.record_success(attempt.source_id, attempt.outcome)

    def is_healthy(self, source_id: str) -> bool:
        s = self._sources.get(source_id)
        return s.healthy if s else True  # Unknown sources assumed healthy

    def get_unhealthy(self) -> list[str]:
        return [sid for sid, s in self._sources.items() if not s.healthy]

    def all_healthy(self) -> bool:
        return all(s.healthy for s in self._sources.values())

    def get_health(self, source_id: str) -> SourceHealth | None:
        return self._sources.get(source_id)

    def snapshot(self) -> dict[str, dict]:
        return {sid: s.to_dict() for sid, s in self._sources.items()}
