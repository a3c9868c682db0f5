"""
Acknowledgement tracking.

    POLLING ──(strategy match)──► ACKNOWLEDGED
       │
       └──(deadline passed)─────► TIMED_OUT

One timer loop drives a ranked list of detection strategies. Each tick runs
the strategies in order until one reports a delivery; a strategy that raises
is logged and skipped for that tick. The wait returns exactly once. Clock and
sleep are injectable so tests can run the loop without real time passing.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Sequence

from relaywatch.errors import AcknowledgementTimeout, QueryTransientFailure
from relaywatch.models import SEQUENCE_UNKNOWN, AcknowledgementRecord, utc_now
from relaywatch.observability import RelayLayer, RelayLogger, get_logger
from relaywatch.strategies import Delivery, DetectionStrategy

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]


class AcknowledgementTracker:
    """Polls the ledgers until a probe is seen delivered or the budget runs out."""

    def __init__(
        self,
        strategies: Sequence[DetectionStrategy],
        poll_interval: float = 3.0,
        timeout_ms: int = 60_000,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
        logger: Optional[RelayLogger] = None,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.strategies: List[DetectionStrategy] = list(strategies)
        self.poll_interval = poll_interval
        self.timeout_ms = timeout_ms
        self._clock = clock or utc_now
        self._sleep = sleep or asyncio.sleep
        self._log = logger or get_logger("tracker", RelayLayer.TRACKER)

    async def wait_for_acknowledgement(
        self,
        sequence_id: int,
        timeout_ms: Optional[int] = None,
    ) -> AcknowledgementRecord:
        timeout_ms = self.timeout_ms if timeout_ms is None else timeout_ms

        if sequence_id == SEQUENCE_UNKNOWN:
            self._log.warning(
                "Not polling for an unknown packet sequence",
                error_code="EXTRACTION_FAILED",
            )
            return AcknowledgementRecord.timed_out(sequence_id)

        started = self._clock()
        deadline = started + timedelta(milliseconds=timeout_ms)
        self._log.info("Waiting for acknowledgement", sequence=sequence_id, timeout_ms=timeout_ms)

        tick = 0
        while True:
            tick += 1
            delivery = await self._tick(sequence_id, tick)
            if delivery is not None:
                ack_time = self._clock()
                self._log.info(
                    "Acknowledgement detected",
                    sequence=sequence_id,
                    strategy=delivery.strategy,
                    target_tx_hash=delivery.target_tx_hash,
                    relay_address=delivery.identity.address,
                    relay_label=delivery.identity.label,
                    tick=tick,
                    waited_ms=int((ack_time - started).total_seconds() * 1000),
                )
                return AcknowledgementRecord(
                    sequence_id=sequence_id,
                    acknowledged=True,
                    ack_time=ack_time,
                    target_tx_hash=delivery.target_tx_hash,
                    relay_address=delivery.identity.address,
                    relay_label=delivery.identity.label,
                    strategy=delivery.strategy,
                )

            remaining = (deadline - self._clock()).total_seconds()
            if remaining <= 0:
                break
            await self._sleep(min(self.poll_interval, remaining))

        timeout = AcknowledgementTimeout(sequence_id, timeout_ms)
        self._log.warning(str(timeout), error_code="ACK_TIMEOUT", sequence=sequence_id, ticks=tick)
        return AcknowledgementRecord.timed_out(sequence_id)

    async def _tick(self, sequence_id: int, tick: int) -> Optional[Delivery]:
        for strategy in self.strategies:
            try:
                delivery = await strategy.attempt(sequence_id)
            except QueryTransientFailure as e:
                self._log.debug(
                    "Strategy query failed",
                    strategy=strategy.name,
                    sequence=sequence_id,
                    tick=tick,
                    endpoint=e.endpoint,
                    reason=e.reason,
                )
                continue
            except Exception as e:
                self._log.warning(
                    "Strategy raised unexpectedly",
                    strategy=strategy.name,
                    sequence=sequence_id,
                    tick=tick,
                    reason=f"{type(e).__name__}: {e}",
                )
                continue
            if delivery is not None:
                return delivery
        self._log.debug("No delivery yet", sequence=sequence_id, tick=tick)
        return None
