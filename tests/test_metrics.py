"""
Per-relayer metrics tests.

Run with: pytest tests/test_metrics.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from relaywatch.metrics import (
    MIN_UPTIME_HOURS,
    MetricsAggregator,
    compute,
    group_key,
    longest_failure_run,
    summarize,
)
from relaywatch.models import RelayObservation

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def obs(minutes, success=True, latency=1000, label="Alpha", address="cosmos1alpha"):
    return RelayObservation(
        test_time=T0 + timedelta(minutes=minutes),
        source_tx_hash=f"TX{minutes}",
        sequence_id=minutes + 1,
        success=success,
        latency_ms=latency if success else 60_000,
        relay_address=address,
        relay_label=label,
        error_message=None if success else "Acknowledgement timeout",
    )


class TestLongestFailureRun:
    @pytest.mark.parametrize("pattern,expected", [
        ("", 0),
        ("SSS", 0),
        ("FFSF", 2),
        ("SFFFSFF", 3),
        ("FFFF", 4),
    ])
    def test_runs(self, pattern, expected):
        observations = [obs(i, success=(c == "S")) for i, c in enumerate(pattern)]
        assert longest_failure_run(observations) == expected


class TestGroupKey:
    def test_relayed_by_prefix_merged(self):
        assert group_key(obs(0, label="relayed-by: Alpha")) == group_key(obs(1, label="Alpha")) == "Alpha"

    @pytest.mark.parametrize("label", [None, "", "relayed-by:", "relayed-by:   "])
    def test_unlabelled(self, label):
        assert group_key(obs(0, label=label)) is None


class TestCompute:
    """Grouping and scoring of the observation log."""

    def test_success_rate_and_latencies(self):
        log = [obs(0, latency=1000), obs(1, latency=3000), obs(2, success=False), obs(3, latency=2000), obs(4, latency=4000)]
        [metrics] = compute(log)
        assert metrics.relay_label == "Alpha"
        assert metrics.total_tests == 5
        assert metrics.success_count == 4
        assert metrics.failure_count == 1
        assert metrics.success_rate == 80.0
        assert metrics.avg_latency == 2500.0
        assert metrics.max_latency == 4000
        assert metrics.min_latency == 1000

    def test_continuous_failures_in_time_order(self):
        """Log order is not time order; runs are counted over sorted times."""
        log = [obs(3, success=False), obs(0, success=False), obs(2, success=True), obs(1, success=False)]
        [metrics] = compute(log)
        assert metrics.continuous_failures == 2
        assert metrics.last_active_time == T0 + timedelta(minutes=3)

    def test_no_successes(self):
        [metrics] = compute([obs(0, success=False), obs(1, success=False)])
        assert metrics.success_rate == 0.0
        assert metrics.avg_latency == 0.0
        assert metrics.max_latency == 0
        assert metrics.min_latency == 0

    def test_uptime_floor(self):
        [metrics] = compute([obs(0)])
        assert metrics.uptime_hours == MIN_UPTIME_HOURS

    def test_uptime_span(self):
        [metrics] = compute([obs(0), obs(120)])
        assert metrics.uptime_hours == pytest.approx(2.0)

    def test_groups_sorted_and_unlabelled_excluded(self):
        log = [obs(0, label="Zeta"), obs(1, label="relayed-by: Alpha"), obs(2, label=None), obs(3, label="Alpha")]
        metrics = compute(log)
        assert [m.relay_label for m in metrics] == ["Alpha", "Zeta"]
        assert metrics[0].total_tests == 2

    def test_distinct_addresses(self):
        log = [obs(0, address="cosmos1a"), obs(1, address="cosmos1b"), obs(2, address="cosmos1a"), obs(3, address=None)]
        [metrics] = compute(log)
        assert metrics.relay_addresses == ["cosmos1a", "cosmos1b"]

    def test_pure(self):
        log = [obs(2), obs(0, success=False), obs(1)]
        snapshot = list(log)
        assert compute(log) == compute(log)
        assert log == snapshot

    def test_new_observation_touches_only_its_group(self):
        log = [obs(0, label="Alpha"), obs(1, label="Alpha", success=False), obs(2, label="Beta")]
        before = {m.relay_label: m for m in compute(log)}

        after = {m.relay_label: m for m in compute(log + [obs(3, label="Beta", latency=4000)])}

        assert after["Alpha"] == before["Alpha"]
        assert after["Beta"] != before["Beta"]
        assert after["Beta"].total_tests == 2
        assert after["Beta"].max_latency == 4000

    def test_empty_log(self):
        assert compute([]) == []


class TestSummary:
    def test_summary_totals(self):
        log = [obs(0, label="Alpha"), obs(1, label="Beta", success=False), obs(2, label="Beta"), obs(3, label=None, success=False)]
        generated = T0 + timedelta(hours=1)
        summary = summarize(log, compute(log), generated_at=generated)

        assert summary["generated_at"] == "2026-03-01T01:00:00+00:00"
        assert summary["total_tests"] == 4
        assert summary["successful_tests"] == 2
        assert summary["success_rate"] == 50.0
        assert summary["average_latency"] == 1000.0
        assert summary["active_relayers"] == 2
        assert [r["relay_label"] for r in summary["relayers"]] == ["Alpha", "Beta"]
        assert summary["recent_observations"][0]["source_tx_hash"] == "TX3"

    def test_recent_limited_to_ten(self):
        log = [obs(i) for i in range(15)]
        summary = MetricsAggregator().summarize(log)
        recent = summary["recent_observations"]
        assert len(recent) == 10
        assert recent[0]["source_tx_hash"] == "TX14"

    def test_empty(self):
        summary = summarize([], [])
        assert summary["total_tests"] == 0
        assert summary["success_rate"] == 0.0
        assert summary["relayers"] == []
