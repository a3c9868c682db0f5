"""
Probe sessions.

A session wires one initiator, one tracker and one store together and runs
probes through them:

    submit ──► wait for acknowledgement ──► merge ──► append ──► save

`run_probe` is a single probe. `run_batch` and `run_stability` run a fixed
number of probes one after another with a pause between them, after checking
that the channel is open, and return a pass/fail verdict. `run_continuous`
keeps probing on a start-to-start interval until stopped.
Probes never overlap: the signer account has a single sequence number.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from relaywatch.clients import IndexedLedgerClient, LedgerClient, Signer
from relaywatch.config import RelayWatchConfig
from relaywatch.health import ChannelChecker, CheckResult
from relaywatch.identity import IdentityResolver
from relaywatch.initiator import TransferInitiator
from relaywatch.metrics import MetricsAggregator, longest_failure_run
from relaywatch.models import SEQUENCE_UNKNOWN, RelayerMetrics, RelayObservation, utc_now
from relaywatch.observability import (
    RelayLayer,
    RelayLogger,
    generate_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
)
from relaywatch.store import TestLogStore
from relaywatch.strategies import (
    BlockScanStrategy,
    DestinationSearchStrategy,
    DetectionStrategy,
    SourceProofStrategy,
)
from relaywatch.tracker import AcknowledgementTracker

BATCH_MIN_SUCCESS_RATE = 80.0
STABILITY_MIN_SUCCESS_RATE = 90.0
STABILITY_MAX_FAILURE_RUN = 3


class GracefulStop:
    """
    Stop request shared by a running session and the signal handler.

    The first request lets the current probe finish; a second one raises
    KeyboardInterrupt to abandon it.
    """

    def __init__(self, logger: Optional[RelayLogger] = None):
        self._event = asyncio.Event()
        self.requests = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._log = logger or get_logger("stop", RelayLayer.SESSION)

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def request(self) -> None:
        self.requests += 1
        if self.requests > 1:
            self._log.warning("Second stop request, exiting immediately")
            raise KeyboardInterrupt
        self._log.info("Stop requested, finishing the current probe")
        self._event.set()

    async def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if a stop was requested meanwhile."""
        if self._event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def install(self) -> None:
        """Route SIGINT to request() on the running loop."""
        self._loop = asyncio.get_running_loop()
        self._loop.add_signal_handler(signal.SIGINT, self.request)

    def uninstall(self) -> None:
        if self._loop is not None:
            self._loop.remove_signal_handler(signal.SIGINT)
            self._loop = None


@dataclass
class ContinuousRunStats:
    """Counters for a continuous run."""
    count: int = 0
    successes: int = 0
    failures: int = 0

    @property
    def success_rate(self) -> float:
        return 100.0 * self.successes / self.count if self.count else 0.0

    def record(self, observation: RelayObservation) -> None:
        self.count += 1
        if observation.success:
            self.successes += 1
        else:
            self.failures += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": round(self.success_rate, 2),
        }


@dataclass
class SeriesResult:
    """A fixed-size probe series and its pass verdict."""
    tag: str
    planned: int
    observations: List[RelayObservation] = field(default_factory=list)
    min_success_rate: float = 0.0
    max_failure_run: Optional[int] = None
    channel: Optional[CheckResult] = None

    @property
    def completed(self) -> int:
        return len(self.observations)

    @property
    def successes(self) -> int:
        return sum(1 for o in self.observations if o.success)

    @property
    def success_rate(self) -> float:
        """Successes over the planned count; probes never sent count as failures."""
        return 100.0 * self.successes / self.planned if self.planned else 0.0

    @property
    def longest_failure_run(self) -> int:
        return longest_failure_run(self.observations)

    @property
    def average_latency(self) -> float:
        latencies = [o.latency_ms for o in self.observations if o.success]
        return sum(latencies) / len(latencies) if latencies else 0.0

    @property
    def passed(self) -> bool:
        if not self.planned or self.completed < self.planned:
            return False
        if self.success_rate < self.min_success_rate:
            return False
        return self.max_failure_run is None or self.longest_failure_run <= self.max_failure_run

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "passed": self.passed,
            "planned": self.planned,
            "completed": self.completed,
            "successes": self.successes,
            "success_rate": round(self.success_rate, 2),
            "average_latency": round(self.average_latency, 2),
            "longest_failure_run": self.longest_failure_run,
            "channel": self.channel.to_dict() if self.channel else None,
            "observations": [o.to_dict() for o in self.observations],
        }


class ProbeSession:
    """Runs probes end to end and keeps the observation log current."""

    def __init__(
        self,
        initiator: TransferInitiator,
        tracker: AcknowledgementTracker,
        store: TestLogStore,
        aggregator: Optional[MetricsAggregator] = None,
        timeout_ms: Optional[int] = None,
        stop: Optional[GracefulStop] = None,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[RelayLogger] = None,
        channel_checker: Optional[ChannelChecker] = None,
    ):
        self.initiator = initiator
        self.tracker = tracker
        self.store = store
        self.aggregator = aggregator or MetricsAggregator()
        self.timeout_ms = tracker.timeout_ms if timeout_ms is None else timeout_ms
        self.stop = stop or GracefulStop()
        self._clock = clock or utc_now
        self._log = logger or get_logger("session", RelayLayer.SESSION)
        self.channel_checker = channel_checker

    @classmethod
    def from_config(
        cls,
        config: RelayWatchConfig,
        signer: Signer,
        source: LedgerClient,
        destination: IndexedLedgerClient,
        **kwargs: Any,
    ) -> "ProbeSession":
        """Assemble the default detection strategies and components from config."""
        probe = config.probe
        channel_id = config.channel.channel_id.get()
        window = probe.search_window_blocks.get()
        initiator = TransferInitiator.from_config(config, signer, destination)
        resolver = IdentityResolver(marker=initiator.marker)

        search = DestinationSearchStrategy(destination, resolver, channel_id, window=window)
        strategies: List[DetectionStrategy] = [
            search,
            SourceProofStrategy(source, config.channel.port_id.get(), channel_id, evidence=search),
        ]
        if probe.block_scan_enabled.get():
            strategies.append(BlockScanStrategy(destination, resolver, channel_id, window=window))

        timeout_ms = probe.timeout_seconds.get() * 1000
        tracker = AcknowledgementTracker(
            strategies,
            poll_interval=probe.poll_interval_seconds.get(),
            timeout_ms=timeout_ms,
        )
        store = TestLogStore(config.storage.log_file.get(), config.storage.metrics_file.get())
        kwargs.setdefault("channel_checker", ChannelChecker(source, config.channel.port_id.get(), channel_id))
        return cls(initiator, tracker, store, timeout_ms=timeout_ms, **kwargs)

    async def run_probe(self, probe_memo: Optional[str] = None) -> RelayObservation:
        """Submit one probe, wait for it and persist the observation."""
        token = set_correlation_id(generate_correlation_id())
        try:
            result = await self.initiator.submit(probe_memo)
            attempt = result.attempt

            ack = None
            if attempt.submitted and attempt.sequence_id != SEQUENCE_UNKNOWN:
                ack = await self.tracker.wait_for_acknowledgement(attempt.sequence_id, self.timeout_ms)

            observation = RelayObservation.merge(attempt, ack, self.timeout_ms, test_time=self._clock())
            self.store.append(observation)
            self.store.save()

            self._log.info(
                "Probe finished",
                success=observation.success,
                source_tx_hash=observation.source_tx_hash,
                sequence=observation.sequence_id,
                latency_ms=observation.latency_ms,
                relay_label=observation.relay_label,
                failure_kind=observation.failure_kind,
            )
            return observation
        finally:
            reset_correlation_id(token)

    async def preflight(self) -> Optional[CheckResult]:
        """Channel state check; None when the session has no channel checker."""
        if self.channel_checker is None:
            return None
        return await self.channel_checker.check()

    async def run_series(
        self,
        count: int,
        interval_seconds: float,
        tag: str,
        min_success_rate: float = 0.0,
        max_failure_run: Optional[int] = None,
    ) -> SeriesResult:
        """
        Run `count` probes sequentially, pausing `interval_seconds` between them.

        No probe is sent when the channel check fails. A series cut short by a
        stop request is reported but never passes.
        """
        result = SeriesResult(
            tag=tag,
            planned=count,
            min_success_rate=min_success_rate,
            max_failure_run=max_failure_run,
        )
        result.channel = await self.preflight()
        if result.channel is not None and not result.channel.operational:
            self._log.error(
                "Probe series skipped, channel not open",
                tag=tag,
                detail=result.channel.message,
                error_code="CHANNEL_NOT_OPEN",
            )
            return result

        self._log.info("Probe series started", tag=tag, count=count, interval_seconds=interval_seconds)
        for i in range(count):
            if self.stop.requested:
                break
            memo = self.initiator.marker.make(tag=f"{tag}-{i + 1}")
            result.observations.append(await self.run_probe(memo))
            if i < count - 1 and await self.stop.wait(interval_seconds):
                break

        log = self._log.info if result.passed else self._log.warning
        log(
            "Probe series finished",
            tag=tag,
            passed=result.passed,
            completed=result.completed,
            successes=result.successes,
            success_rate=round(result.success_rate, 2),
            longest_failure_run=result.longest_failure_run,
        )
        return result

    async def run_batch(self, count: int = 10, interval_seconds: float = 2.0) -> SeriesResult:
        """Passes at a success rate of at least 80%."""
        return await self.run_series(count, interval_seconds, "batch", min_success_rate=BATCH_MIN_SUCCESS_RATE)

    async def run_stability(self, count: int = 12, interval_seconds: float = 5.0) -> SeriesResult:
        """Passes at a success rate of at least 90% with no more than 3 failures in a row."""
        return await self.run_series(
            count,
            interval_seconds,
            "stability",
            min_success_rate=STABILITY_MIN_SUCCESS_RATE,
            max_failure_run=STABILITY_MAX_FAILURE_RUN,
        )

    async def run_continuous(
        self,
        interval_seconds: float = 30.0,
        max_count: int = 0,
        stop_on_error: bool = False,
    ) -> ContinuousRunStats:
        """
        Probe until stopped, `max_count` probes have run (0 = unlimited), or,
        with `stop_on_error`, the first failed probe.

        The interval is measured start to start: the pause after a probe is
        the interval minus the time the probe took, never negative.
        """
        stats = ContinuousRunStats()
        self._log.info(
            "Continuous run started",
            interval_seconds=interval_seconds,
            max_count=max_count,
            stop_on_error=stop_on_error,
        )
        while not self.stop.requested:
            started = time.monotonic()
            observation = await self.run_probe()
            stats.record(observation)

            if not observation.success and stop_on_error:
                self._log.warning("Stopping after failed probe", error=observation.error_message)
                break
            if max_count and stats.count >= max_count:
                break

            elapsed = time.monotonic() - started
            if await self.stop.wait(max(0.0, interval_seconds - elapsed)):
                break

        self._log.info("Continuous run finished", **stats.to_dict())
        return stats

    def refresh_metrics(self) -> List[RelayerMetrics]:
        """Recompute per-relayer metrics from the log and write the metrics file."""
        metrics = self.aggregator.compute(self.store.observations)
        self.store.save_metrics(metrics)
        return metrics

    def summary(self) -> Dict[str, Any]:
        return self.aggregator.summarize(self.store.observations, generated_at=self._clock())
