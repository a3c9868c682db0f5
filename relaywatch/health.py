"""
RELAYWATCH Health Checks

Liveness of the two ledgers the engine depends on. Both are checked
concurrently; the report is healthy only when every ledger answers with a
positive height inside the check timeout.

The channel check asks the source ledger for the probe channel's state
before any probe is sent. Only STATE_OPEN passes. When the query itself
fails but the ledger still reports a height, the result is DEGRADED: the
channel could not be verified, and probes may still go out.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from relaywatch.clients import LedgerClient
from relaywatch.errors import QueryTransientFailure
from relaywatch.observability import RelayLayer, RelayLogger, get_logger, timed_operation
from relaywatch.txcodec import (
    CHANNEL_QUERY_PATH,
    CHANNEL_STATE_OPEN,
    CHANNEL_STATES,
    ProtobufDecodeError,
    decode_channel_state,
    encode_channel_request,
)


class HealthStatus(Enum):
    """Health check result status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class CheckResult:
    """Result of a single ledger check."""
    name: str
    status: HealthStatus
    message: str = ""
    latency_ms: float = 0.0
    height: Optional[int] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    @property
    def operational(self) -> bool:
        return self.status is not HealthStatus.UNHEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": round(self.latency_ms, 2),
            "height": self.height,
            "timestamp": self.timestamp,
        }


@dataclass
class HealthReport:
    """Combined report over all ledgers."""
    status: HealthStatus
    checks: List[CheckResult]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "checks": [c.to_dict() for c in self.checks],
        }


class LedgerHealthChecker:
    """Fan-out/join liveness check over named ledger clients."""

    def __init__(
        self,
        ledgers: Mapping[str, LedgerClient],
        timeout_seconds: float = 10.0,
        logger: Optional[RelayLogger] = None,
    ):
        self.ledgers = dict(ledgers)
        self.timeout_seconds = timeout_seconds
        self._log = logger or get_logger("ledgers", RelayLayer.HEALTH)

    async def check_ledger(self, name: str, client: LedgerClient) -> CheckResult:
        start = time.monotonic()
        try:
            height = await asyncio.wait_for(client.get_height(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return CheckResult(
                name=name,
                status=HealthStatus.UNHEALTHY,
                message=f"No answer within {self.timeout_seconds}s",
                latency_ms=(time.monotonic() - start) * 1000,
            )
        except Exception as e:
            return CheckResult(
                name=name,
                status=HealthStatus.UNHEALTHY,
                message=f"{type(e).__name__}: {e}",
                latency_ms=(time.monotonic() - start) * 1000,
            )

        latency_ms = (time.monotonic() - start) * 1000
        if height <= 0:
            return CheckResult(
                name=name,
                status=HealthStatus.UNHEALTHY,
                message=f"Reported height {height}",
                latency_ms=latency_ms,
                height=height,
            )
        return CheckResult(
            name=name,
            status=HealthStatus.HEALTHY,
            message="ok",
            latency_ms=latency_ms,
            height=height,
        )

    async def check(self) -> HealthReport:
        timed = timed_operation(self._log, "ledger_health_check")(self._check_all)
        return await timed()

    async def _check_all(self) -> HealthReport:
        names = list(self.ledgers)
        results = await asyncio.gather(*(self.check_ledger(n, self.ledgers[n]) for n in names))
        status = HealthStatus.HEALTHY if all(r.healthy for r in results) else HealthStatus.UNHEALTHY
        report = HealthReport(status=status, checks=list(results))

        for result in results:
            self._log.info(
                "Ledger health",
                ledger=result.name,
                status=result.status.value,
                height=result.height,
                latency_ms=round(result.latency_ms, 2),
                detail=result.message,
            )
        if not report.healthy:
            self._log.error("One or more ledgers are unhealthy", error_code="LEDGER_UNHEALTHY")
        return report


class ChannelChecker:
    """Checks that the probe channel is OPEN on the source ledger."""

    def __init__(
        self,
        ledger: LedgerClient,
        port_id: str,
        channel_id: str,
        timeout_seconds: float = 10.0,
        logger: Optional[RelayLogger] = None,
    ):
        self.ledger = ledger
        self.port_id = port_id
        self.channel_id = channel_id
        self.timeout_seconds = timeout_seconds
        self._log = logger or get_logger("channel", RelayLayer.HEALTH)

    @property
    def name(self) -> str:
        return f"{self.port_id}/{self.channel_id}"

    async def check(self) -> CheckResult:
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.ledger.abci_query(CHANNEL_QUERY_PATH, encode_channel_request(self.port_id, self.channel_id)),
                timeout=self.timeout_seconds,
            )
            if result.code != 0:
                check = self._result(HealthStatus.UNHEALTHY, f"Channel query failed ({result.code}): {result.log}", start)
            else:
                check = self._from_state(decode_channel_state(result.value), start)
        except (asyncio.TimeoutError, QueryTransientFailure, ProtobufDecodeError) as e:
            check = await self._unverified(e, start)

        log = self._log.info if check.healthy else self._log.warning
        log("Channel state", channel=self.name, status=check.status.value, detail=check.message)
        return check

    def _from_state(self, state: Optional[int], start: float) -> CheckResult:
        if state is None:
            return self._result(HealthStatus.UNHEALTHY, "Channel not found", start)
        label = CHANNEL_STATES.get(state, f"STATE_{state}")
        if state != CHANNEL_STATE_OPEN:
            return self._result(HealthStatus.UNHEALTHY, f"Channel is {label}, not STATE_OPEN", start)
        return self._result(HealthStatus.HEALTHY, label, start)

    async def _unverified(self, error: BaseException, start: float) -> CheckResult:
        reason = f"{type(error).__name__}: {error}" if str(error) else type(error).__name__
        try:
            height = await asyncio.wait_for(self.ledger.get_height(), timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, QueryTransientFailure) as e:
            return self._result(HealthStatus.UNHEALTHY, f"{reason}; ledger unreachable: {type(e).__name__}", start)
        if height <= 0:
            return self._result(HealthStatus.UNHEALTHY, f"{reason}; reported height {height}", start)
        return self._result(
            HealthStatus.DEGRADED,
            f"Channel state unverified ({reason}); ledger live at height {height}",
            start,
            height=height,
        )

    def _result(self, status: HealthStatus, message: str, start: float, height: Optional[int] = None) -> CheckResult:
        return CheckResult(
            name=self.name,
            status=status,
            message=message,
            latency_ms=(time.monotonic() - start) * 1000,
            height=height,
        )
