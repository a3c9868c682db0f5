"""
Ledger health check tests.

Run with: pytest tests/test_health.py -v
"""

import asyncio
import io
import json
import logging

import pytest

from relaywatch.clients import AbciQueryResult, MockLedger
from relaywatch.health import ChannelChecker, HealthStatus, LedgerHealthChecker
from relaywatch.observability import ROOT_LOGGER_NAME, RelayLayer, configure_logging, get_logger
from relaywatch.txcodec import CHANNEL_STATE_OPEN, encode_bytes_field


class HangingLedger(MockLedger):
    async def get_height(self) -> int:
        await asyncio.sleep(10)
        return 1


class TestLedgerHealthChecker:
    def test_all_healthy(self):
        checker = LedgerHealthChecker({"source": MockLedger(height=10), "destination": MockLedger(height=20)})
        report = asyncio.run(checker.check())
        assert report.healthy
        assert [c.height for c in report.checks] == [10, 20]
        assert report.to_dict()["status"] == "healthy"

    def test_failing_ledger(self):
        broken = MockLedger()
        broken.fail("get_height")
        report = asyncio.run(LedgerHealthChecker({"source": MockLedger(), "destination": broken}).check())
        assert report.status is HealthStatus.UNHEALTHY
        source, destination = report.checks
        assert source.healthy
        assert not destination.healthy
        assert "QueryTransientFailure" in destination.message

    def test_zero_height_unhealthy(self):
        report = asyncio.run(LedgerHealthChecker({"source": MockLedger(height=0)}).check())
        assert not report.healthy
        assert report.checks[0].height == 0

    def test_timeout(self):
        checker = LedgerHealthChecker({"source": HangingLedger()}, timeout_seconds=0.01)
        report = asyncio.run(checker.check())
        assert not report.healthy
        assert report.checks[0].message.startswith("No answer within")

    @pytest.mark.slow
    def test_checks_run_concurrently(self):
        checker = LedgerHealthChecker(
            {"a": HangingLedger(), "b": HangingLedger(), "c": HangingLedger()},
            timeout_seconds=0.05,
        )

        async def main():
            loop = asyncio.get_running_loop()
            start = loop.time()
            report = await checker.check()
            return report, loop.time() - start

        report, elapsed = asyncio.run(main())
        assert not report.healthy
        assert elapsed < 0.15

    def test_timing_goes_to_injected_logger(self):
        buffer = io.StringIO()
        handler = configure_logging(level="info", fmt="json", stream=buffer)
        try:
            log = get_logger("nightly", RelayLayer.HEALTH)
            asyncio.run(LedgerHealthChecker({"source": MockLedger()}, logger=log).check())
        finally:
            logging.getLogger(ROOT_LOGGER_NAME).removeHandler(handler)

        records = [json.loads(line) for line in buffer.getvalue().splitlines() if line]
        [timing] = [r for r in records if r.get("operation") == "ledger_health_check"]
        assert timing["logger"] == "relaywatch.health.nightly"
        assert all(r["logger"] == "relaywatch.health.nightly" for r in records)


class EmptyChannelLedger(MockLedger):
    """Answers the channel query with a channel that has no state field."""

    async def abci_query(self, path, data):
        return AbciQueryResult(code=0, value=encode_bytes_field(1, b""))


class TestChannelChecker:
    """Channel state pre-check on the source ledger."""

    def _check(self, ledger):
        return asyncio.run(ChannelChecker(ledger, "transfer", "channel-0").check())

    def test_open(self):
        ledger = MockLedger()
        ledger.set_channel("transfer", "channel-0", CHANNEL_STATE_OPEN)
        result = self._check(ledger)
        assert result.healthy
        assert result.message == "STATE_OPEN"
        assert result.name == "transfer/channel-0"

    @pytest.mark.parametrize("state,label", [(1, "STATE_INIT"), (2, "STATE_TRYOPEN"), (4, "STATE_CLOSED"), (9, "STATE_9")])
    def test_not_open(self, state, label):
        ledger = MockLedger()
        ledger.set_channel("transfer", "channel-0", state)
        result = self._check(ledger)
        assert result.status is HealthStatus.UNHEALTHY
        assert result.message == f"Channel is {label}, not STATE_OPEN"

    def test_other_channel_not_found(self):
        ledger = MockLedger()
        ledger.set_channel("transfer", "channel-7")
        result = self._check(ledger)
        assert not result.operational
        assert "channel not found" in result.message

    def test_missing_state_is_uninitialized(self):
        result = self._check(EmptyChannelLedger())
        assert "STATE_UNINITIALIZED_UNSPECIFIED" in result.message
        assert not result.operational

    def test_query_failure_on_live_ledger_is_degraded(self):
        ledger = MockLedger(height=55)
        ledger.fail("abci_query")
        result = self._check(ledger)
        assert result.status is HealthStatus.DEGRADED
        assert result.operational
        assert not result.healthy
        assert result.height == 55
        assert result.message.startswith("Channel state unverified (QueryTransientFailure")

    def test_query_failure_on_dead_ledger_is_unhealthy(self):
        ledger = MockLedger()
        ledger.fail("abci_query")
        ledger.fail("get_height")
        result = self._check(ledger)
        assert result.status is HealthStatus.UNHEALTHY
        assert "ledger unreachable" in result.message
