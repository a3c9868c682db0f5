"""
Per-relayer metrics over the observation log.

`compute` is a pure function of the log: it never mutates its input, and
calling it twice on the same log returns equal results. Observations without
a resolved relay label are kept in the log but do not belong to any group.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from relaywatch.identity import strip_relayed_by
from relaywatch.models import RelayerMetrics, RelayObservation, format_timestamp, utc_now
from relaywatch.observability import RelayLayer, RelayLogger, get_logger

MIN_UPTIME_HOURS = 0.1

RECENT_OBSERVATIONS = 10


def group_key(observation: RelayObservation) -> Optional[str]:
    if not observation.relay_label:
        return None
    return strip_relayed_by(observation.relay_label) or None


def longest_failure_run(observations: Sequence[RelayObservation]) -> int:
    longest = current = 0
    for observation in observations:
        if observation.success:
            current = 0
        else:
            current += 1
            longest = max(longest, current)
    return longest


def _metrics_for(label: str, observations: List[RelayObservation]) -> RelayerMetrics:
    # sorted() is stable: same-time observations keep log order
    ordered = sorted(observations, key=lambda o: o.test_time)
    latencies = [o.latency_ms for o in ordered if o.success]
    total = len(ordered)
    successes = len(latencies)

    span_hours = (ordered[-1].test_time - ordered[0].test_time).total_seconds() / 3600
    addresses: List[str] = []
    for o in ordered:
        if o.relay_address and o.relay_address not in addresses:
            addresses.append(o.relay_address)

    return RelayerMetrics(
        relay_label=label,
        total_tests=total,
        success_count=successes,
        failure_count=total - successes,
        success_rate=100.0 * successes / total,
        avg_latency=sum(latencies) / successes if successes else 0.0,
        max_latency=max(latencies) if latencies else 0,
        min_latency=min(latencies) if latencies else 0,
        continuous_failures=longest_failure_run(ordered),
        uptime_hours=max(MIN_UPTIME_HOURS, span_hours),
        last_active_time=ordered[-1].test_time,
        relay_addresses=addresses,
    )


def compute(log: Sequence[RelayObservation]) -> List[RelayerMetrics]:
    """Group the log by relay label and score each group; sorted by label."""
    groups: Dict[str, List[RelayObservation]] = {}
    for observation in log:
        key = group_key(observation)
        if key is None:
            continue
        groups.setdefault(key, []).append(observation)
    return [_metrics_for(label, groups[label]) for label in sorted(groups)]


class MetricsAggregator:
    """Logging wrapper around compute() plus the JSON run summary."""

    def __init__(self, logger: Optional[RelayLogger] = None):
        self._log = logger or get_logger("aggregator", RelayLayer.METRICS)

    def compute(self, log: Sequence[RelayObservation]) -> List[RelayerMetrics]:
        metrics = compute(log)
        unlabelled = sum(1 for o in log if group_key(o) is None)
        self._log.info(
            "Relayer metrics computed",
            observations=len(log),
            relayers=len(metrics),
            unlabelled=unlabelled,
        )
        return metrics

    def summarize(
        self,
        log: Sequence[RelayObservation],
        metrics: Optional[Sequence[RelayerMetrics]] = None,
        generated_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        return summarize(log, metrics if metrics is not None else compute(log), generated_at)


def summarize(
    log: Sequence[RelayObservation],
    metrics: Sequence[RelayerMetrics],
    generated_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Overall run summary: totals, relayers by success rate, latest observations."""
    total = len(log)
    successes = [o for o in log if o.success]
    recent = sorted(log, key=lambda o: o.test_time, reverse=True)[:RECENT_OBSERVATIONS]
    return {
        "generated_at": format_timestamp(generated_at or utc_now()),
        "total_tests": total,
        "successful_tests": len(successes),
        "success_rate": 100.0 * len(successes) / total if total else 0.0,
        "average_latency": sum(o.latency_ms for o in successes) / len(successes) if successes else 0.0,
        "active_relayers": len(metrics),
        "relayers": [m.to_dict() for m in sorted(metrics, key=lambda m: m.success_rate, reverse=True)],
        "recent_observations": [o.to_dict() for o in recent],
    }
