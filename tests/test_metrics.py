"""
Tests for ikelink.metrics module.
"""

from ikelink.metrics import (
    MetricsCollector,
    SessionCaller,
    UnderlyingNetworkType,
    get_metrics_collector,
)


class TestMetricsCollector:
    """Tests for liveness metrics collection."""

    def test_initial_stats(self):
        """Test a fresh collector reports zeros."""
        stats = MetricsCollector().get_stats()

        assert stats["checks_completed"] == 0
        assert stats["avg_elapsed_millis"] == 0
        assert stats["max_elapsed_millis"] == 0

    def test_records_checks(self):
        """Test completed checks update totals."""
        collector = MetricsCollector()

        collector.on_liveness_check_completed(100, 0, True)
        collector.on_liveness_check_completed(300, 2, False)

        stats = collector.get_stats()
        assert stats["checks_completed"] == 2
        assert stats["checks_succeeded"] == 1
        assert stats["checks_failed"] == 1
        assert stats["overlapping_requests"] == 2
        assert stats["avg_elapsed_millis"] == 200
        assert stats["max_elapsed_millis"] == 300

    def test_records_carry_dimensions(self):
        """Test each record is tagged with caller and network type."""
        collector = MetricsCollector(SessionCaller.VPN, UnderlyingNetworkType.WIFI)

        collector.on_liveness_check_completed(50, 1, True)
        collector.set_network_type(UnderlyingNetworkType.CELLULAR)
        collector.on_liveness_check_completed(70, 0, True)

        first, second = collector.get_records()
        assert first.caller == SessionCaller.VPN
        assert first.network_type == UnderlyingNetworkType.WIFI
        assert second.network_type == UnderlyingNetworkType.CELLULAR

    def test_history_bounded(self):
        """Test only the newest records are kept."""
        collector = MetricsCollector(history_size=3)

        for elapsed in range(5):
            collector.on_liveness_check_completed(elapsed, 0, True)

        assert [r.elapsed_millis for r in collector.get_records()] == [2, 3, 4]
        assert collector.get_stats()["checks_completed"] == 5

    def test_reset(self):
        """Test reset clears totals and history."""
        collector = MetricsCollector()
        collector.on_liveness_check_completed(10, 0, True)

        collector.reset()

        assert collector.get_records() == []
        assert collector.get_stats()["checks_completed"] == 0

    def test_format_summary(self):
        """Test summary includes the headline counts."""
        collector = MetricsCollector()
        collector.on_liveness_check_completed(40, 0, True)

        summary = collector.format_summary()

        assert summary.startswith("[LIVENESS] Checks: completed=1 ok=1 failed=0")
        assert "max=40ms" in summary
        assert "Caller: UNSPECIFIED network=UNSPECIFIED" in summary

    def test_global_collector(self):
        """Test the process-wide collector is a singleton."""
        assert get_metrics_collector() is get_metrics_collector()
