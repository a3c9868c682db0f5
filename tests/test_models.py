"""
Record model tests: merging a submission with its acknowledgement wait.

Run with: pytest tests/test_models.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from relaywatch.errors import FailureKind
from relaywatch.models import (
    MISSING_TX_HASH,
    AcknowledgementRecord,
    RelayerMetrics,
    RelayObservation,
    SubmissionResult,
    TransferAttempt,
    TransferOutcome,
    format_timestamp,
    parse_timestamp,
)

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _attempt(sequence_id=5, outcome=TransferOutcome.SUCCESS, error=None, tx_hash="ABC"):
    return TransferAttempt(
        source_tx_hash=tx_hash,
        submitted_at=T0,
        probe_memo="IBC-relay-test-1",
        amount="1000",
        outcome=outcome,
        sequence_id=sequence_id,
        error=error,
    )


def _ack(seconds=4.2, sequence_id=5):
    return AcknowledgementRecord(
        sequence_id=sequence_id,
        acknowledged=True,
        ack_time=T0 + timedelta(seconds=seconds),
        target_tx_hash="DEF",
        relay_address="cosmos1relayer",
        relay_label="Alpha",
        strategy="destination_search",
    )


class TestMerge:
    """One observation per probe, whatever happened."""

    def test_success(self):
        observation = RelayObservation.merge(_attempt(), _ack(4.2), timeout_ms=60_000, test_time=T0)
        assert observation.success
        assert observation.latency_ms == 4200
        assert observation.target_tx_hash == "DEF"
        assert observation.relay_address == "cosmos1relayer"
        assert observation.relay_label == "Alpha"
        assert observation.error_message is None
        assert observation.failure_kind is None

    def test_submission_failure(self):
        attempt = _attempt(sequence_id=0, outcome=TransferOutcome.FAILED, error="node down", tx_hash=MISSING_TX_HASH)
        observation = RelayObservation.merge(attempt, None, timeout_ms=60_000, test_time=T0)
        assert not observation.success
        assert observation.latency_ms == 0
        assert observation.sequence_id == 0
        assert observation.source_tx_hash == MISSING_TX_HASH
        assert observation.error_message == "IBC Transfer failed: node down"
        assert observation.failure_kind == FailureKind.SUBMISSION.value

    def test_unknown_sequence(self):
        observation = RelayObservation.merge(_attempt(sequence_id=0), None, timeout_ms=60_000, test_time=T0)
        assert not observation.success
        assert observation.latency_ms == 0
        assert observation.failure_kind == FailureKind.EXTRACTION.value

    def test_timeout_records_full_budget(self):
        observation = RelayObservation.merge(
            _attempt(), AcknowledgementRecord.timed_out(5), timeout_ms=60_000, test_time=T0
        )
        assert not observation.success
        assert observation.latency_ms == 60_000
        assert observation.error_message == "Acknowledgement timeout"
        assert observation.failure_kind == FailureKind.TIMEOUT.value
        assert observation.relay_label is None

    def test_clock_skew_clamped(self):
        observation = RelayObservation.merge(_attempt(), _ack(-1.0), timeout_ms=60_000, test_time=T0)
        assert observation.success
        assert observation.latency_ms == 0

    def test_negative_latency_rejected_on_success(self):
        with pytest.raises(ValueError):
            RelayObservation(test_time=T0, source_tx_hash="A", sequence_id=1, success=True, latency_ms=-1)


class TestSubmissionResult:
    def test_attempt_from_failure(self):
        result = SubmissionResult(tx_hash="", success=False, timestamp=T0, error="boom")
        attempt = result.attempt
        assert attempt.source_tx_hash == MISSING_TX_HASH
        assert not attempt.submitted
        assert attempt.sequence_id == 0

    def test_attempt_from_success(self):
        result = SubmissionResult(tx_hash="AB", success=True, timestamp=T0, sequence_id=9, probe_memo="m")
        attempt = result.attempt
        assert attempt.submitted
        assert attempt.sequence_id == 9
        assert attempt.probe_memo == "m"


class TestSerialization:
    def test_observation_dict(self):
        observation = RelayObservation.merge(_attempt(), _ack(1.5), timeout_ms=60_000, test_time=T0)
        data = observation.to_dict()
        assert data["test_time"] == "2026-03-01T12:00:00+00:00"
        assert data["latency_ms"] == 1500
        assert RelayObservation.from_dict(data) == observation

    def test_metrics_dict(self):
        metrics = RelayerMetrics(
            relay_label="Alpha", total_tests=2, success_count=1, failure_count=1, success_rate=50.0,
            avg_latency=10.0, max_latency=10, min_latency=10, continuous_failures=1, uptime_hours=0.1,
            last_active_time=T0, relay_addresses=["cosmos1a"],
        )
        assert RelayerMetrics.from_dict(metrics.to_dict()) == metrics

    @pytest.mark.parametrize("text", ["2026-03-01T12:00:00Z", "2026-03-01T12:00:00+00:00", "2026-03-01T12:00:00"])
    def test_parse_timestamp_variants(self, text):
        assert parse_timestamp(text) == T0

    def test_naive_timestamp_formatted_as_utc(self):
        assert format_timestamp(datetime(2026, 3, 1, 12, 0, 0)) == "2026-03-01T12:00:00+00:00"
