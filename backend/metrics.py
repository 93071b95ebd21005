"""In-memory counters for session lifecycle and proxy outcomes.

This module provides the MetricsCollector class that accumulates counts of
created, reused, expired and failed sessions plus proxy failures. The
counters are exposed on the ops-only ``/debug`` route.

Usage:
    >>> from metrics import MetricsCollector
    >>> collector = MetricsCollector()
    >>> collector.record_session_created()
    >>> collector.record_teardown(reason="deadline")
    >>> collector.snapshot()["sessions_created"]
    1
"""

import time
from collections import Counter
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class GatewayMetricsData:
    """Accumulated gateway counters.

    Attributes:
        sessions_created: Backends successfully provisioned.
        sessions_reused: Landing requests served by an existing session.
        provision_failures: Provisioning attempts that failed.
        termination_failures: Termination calls that raised.
        backend_unreachable: Proxy requests that could not reach a backend.
        teardowns: Completed teardowns keyed by reason (sweep, deadline, ...).
        started_at: Unix timestamp when collection began.
    """

    sessions_created: int = 0
    sessions_reused: int = 0
    provision_failures: int = 0
    termination_failures: int = 0
    backend_unreachable: int = 0
    teardowns: Counter[str] = field(default_factory=Counter)
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object]:
        """Convert to a plain dict suitable for JSON responses.

        Returns:
            Dict with all counter fields and the collector uptime.
        """
        return {
            "sessions_created": self.sessions_created,
            "sessions_reused": self.sessions_reused,
            "provision_failures": self.provision_failures,
            "termination_failures": self.termination_failures,
            "backend_unreachable": self.backend_unreachable,
            "teardowns": dict(self.teardowns),
            "uptime_seconds": round(time.time() - self.started_at, 1),
        }


class MetricsCollector:
    """In-memory collector for gateway-wide counters.

    All mutations are plain attribute increments performed on the event
    loop thread, so no locking is needed.
    """

    def __init__(self) -> None:
        """Initialize an empty metrics collector."""
        self._data = GatewayMetricsData()
        logger.info("metrics_collector_initialized")

    def record_session_created(self) -> None:
        self._data.sessions_created += 1

    def record_session_reused(self) -> None:
        self._data.sessions_reused += 1

    def record_provision_failure(self) -> None:
        self._data.provision_failures += 1

    def record_termination_failure(self) -> None:
        self._data.termination_failures += 1

    def record_backend_unreachable(self) -> None:
        self._data.backend_unreachable += 1

    def record_teardown(self, reason: str) -> None:
        """Count a completed teardown.

        Args:
            reason: What triggered the teardown (sweep, deadline, shutdown, ...).
        """
        self._data.teardowns[reason] += 1
        logger.debug("metrics_teardown_recorded", reason=reason)

    def snapshot(self) -> dict[str, object]:
        """Return the current counters as a plain dict."""
        return self._data.to_dict()
