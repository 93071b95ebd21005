"""Tests for metrics.py -- lifecycle counters."""

from metrics import MetricsCollector


class TestMetricsCollector:
    def test_starts_empty(self) -> None:
        snapshot = MetricsCollector().snapshot()

        assert snapshot["sessions_created"] == 0
        assert snapshot["teardowns"] == {}
        assert snapshot["uptime_seconds"] >= 0

    def test_counts_each_event(self) -> None:
        collector = MetricsCollector()
        collector.record_session_created()
        collector.record_session_created()
        collector.record_session_reused()
        collector.record_provision_failure()
        collector.record_termination_failure()
        collector.record_backend_unreachable()
        collector.record_teardown("deadline")
        collector.record_teardown("sweep")
        collector.record_teardown("deadline")

        snapshot = collector.snapshot()

        assert snapshot["sessions_created"] == 2
        assert snapshot["sessions_reused"] == 1
        assert snapshot["provision_failures"] == 1
        assert snapshot["termination_failures"] == 1
        assert snapshot["backend_unreachable"] == 1
        assert snapshot["teardowns"] == {"deadline": 2, "sweep": 1}

    def test_snapshot_is_detached(self) -> None:
        collector = MetricsCollector()
        snapshot = collector.snapshot()
        collector.record_teardown("manual")

        assert snapshot["teardowns"] == {}
