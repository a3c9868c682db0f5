"""
RELAYWATCH Data Model

Records flowing through one probe cycle:

    SubmissionResult ──► TransferAttempt ─┐
                                          ├──► RelayObservation ──► RelayerMetrics
    AcknowledgementRecord ────────────────┘         (persisted)       (derived)

TransferAttempt, AcknowledgementRecord and RelayObservation are immutable
once built. RelayerMetrics is recomputed from the observation log and never
updated in place.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from relaywatch.errors import FailureKind

# Sequence value meaning "could not be extracted"; real packet sequences start at 1.
SEQUENCE_UNKNOWN = 0

MISSING_TX_HASH = "N/A"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """ISO-8601 with an explicit UTC offset."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse ISO-8601, accepting a trailing Z; naive values are taken as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _ms_between(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() * 1000))


class TransferOutcome(Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class SubmissionResult:
    """What TransferInitiator.submit returns."""
    tx_hash: str
    success: bool
    timestamp: datetime
    sequence_id: Optional[int] = None
    error: Optional[str] = None
    probe_memo: str = ""
    amount: Optional[str] = None
    sequence_pattern: Optional[str] = None

    @property
    def attempt(self) -> "TransferAttempt":
        return TransferAttempt(
            source_tx_hash=self.tx_hash or MISSING_TX_HASH,
            submitted_at=self.timestamp,
            probe_memo=self.probe_memo,
            amount=self.amount,
            outcome=TransferOutcome.SUCCESS if self.success else TransferOutcome.FAILED,
            sequence_id=self.sequence_id if self.sequence_id is not None else SEQUENCE_UNKNOWN,
            error=self.error,
        )


@dataclass(frozen=True)
class TransferAttempt:
    """A probe as submitted on the source ledger."""
    source_tx_hash: str
    submitted_at: datetime
    probe_memo: str
    amount: Optional[str]
    outcome: TransferOutcome
    sequence_id: int = SEQUENCE_UNKNOWN
    error: Optional[str] = None

    @property
    def submitted(self) -> bool:
        return self.outcome is TransferOutcome.SUCCESS


@dataclass(frozen=True)
class RelayIdentity:
    """Who delivered a packet, as far as the evidence allows."""
    address: Optional[str] = None
    label: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.address is not None or self.label is not None


@dataclass(frozen=True)
class AcknowledgementRecord:
    """Terminal result of one acknowledgement wait."""
    sequence_id: int
    acknowledged: bool
    ack_time: Optional[datetime] = None
    target_tx_hash: Optional[str] = None
    relay_address: Optional[str] = None
    relay_label: Optional[str] = None
    strategy: Optional[str] = None

    @classmethod
    def timed_out(cls, sequence_id: int) -> "AcknowledgementRecord":
        return cls(sequence_id=sequence_id, acknowledged=False)


@dataclass(frozen=True)
class RelayObservation:
    """
    Durable record of one probe.

    A successful observation always carries a non-negative latency; the
    constructor rejects anything else.
    """
    test_time: datetime
    source_tx_hash: str
    sequence_id: int
    success: bool
    latency_ms: int
    target_tx_hash: Optional[str] = None
    relay_address: Optional[str] = None
    relay_label: Optional[str] = None
    error_message: Optional[str] = None
    amount: Optional[str] = None
    failure_kind: Optional[str] = None

    def __post_init__(self) -> None:
        if self.success and self.latency_ms < 0:
            raise ValueError(f"successful observation with negative latency {self.latency_ms}")

    @classmethod
    def merge(
        cls,
        attempt: TransferAttempt,
        ack: Optional[AcknowledgementRecord],
        timeout_ms: int,
        test_time: Optional[datetime] = None,
    ) -> "RelayObservation":
        """
        Combine a submission and its acknowledgement wait into one record.

        Failed submissions record zero latency, timeouts record the full
        wait budget, and success requires an acknowledgement time.
        """
        test_time = test_time or utc_now()

        if not attempt.submitted:
            return cls(
                test_time=test_time,
                source_tx_hash=attempt.source_tx_hash or MISSING_TX_HASH,
                sequence_id=SEQUENCE_UNKNOWN,
                success=False,
                latency_ms=0,
                error_message=f"IBC Transfer failed: {attempt.error or 'Unknown error'}",
                amount=attempt.amount,
                failure_kind=FailureKind.SUBMISSION.value,
            )

        if attempt.sequence_id == SEQUENCE_UNKNOWN:
            return cls(
                test_time=test_time,
                source_tx_hash=attempt.source_tx_hash,
                sequence_id=SEQUENCE_UNKNOWN,
                success=False,
                latency_ms=0,
                error_message="Packet sequence could not be extracted",
                amount=attempt.amount,
                failure_kind=FailureKind.EXTRACTION.value,
            )

        if ack is None or not ack.acknowledged or ack.ack_time is None:
            return cls(
                test_time=test_time,
                source_tx_hash=attempt.source_tx_hash,
                sequence_id=attempt.sequence_id,
                success=False,
                latency_ms=timeout_ms,
                error_message="Acknowledgement timeout",
                amount=attempt.amount,
                failure_kind=FailureKind.TIMEOUT.value,
            )

        return cls(
            test_time=test_time,
            source_tx_hash=attempt.source_tx_hash,
            sequence_id=attempt.sequence_id,
            success=True,
            latency_ms=max(0, _ms_between(attempt.submitted_at, ack.ack_time)),
            target_tx_hash=ack.target_tx_hash,
            relay_address=ack.relay_address,
            relay_label=ack.relay_label,
            amount=attempt.amount,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_time": format_timestamp(self.test_time),
            "source_tx_hash": self.source_tx_hash,
            "sequence_id": self.sequence_id,
            "success": self.success,
            "latency_ms": self.latency_ms,
            "target_tx_hash": self.target_tx_hash,
            "relay_address": self.relay_address,
            "relay_label": self.relay_label,
            "error_message": self.error_message,
            "amount": self.amount,
            "failure_kind": self.failure_kind,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayObservation":
        return cls(
            test_time=parse_timestamp(data["test_time"]),
            source_tx_hash=data["source_tx_hash"],
            sequence_id=int(data["sequence_id"]),
            success=bool(data["success"]),
            latency_ms=int(data["latency_ms"]),
            target_tx_hash=data.get("target_tx_hash"),
            relay_address=data.get("relay_address"),
            relay_label=data.get("relay_label"),
            error_message=data.get("error_message"),
            amount=data.get("amount"),
            failure_kind=data.get("failure_kind"),
        )


@dataclass
class RelayerMetrics:
    """Reliability and performance of one relay label."""
    relay_label: str
    total_tests: int
    success_count: int
    failure_count: int
    success_rate: float
    avg_latency: float
    max_latency: int
    min_latency: int
    continuous_failures: int
    uptime_hours: float
    last_active_time: datetime
    relay_addresses: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "relay_label": self.relay_label,
            "total_tests": self.total_tests,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": self.success_rate,
            "avg_latency": self.avg_latency,
            "max_latency": self.max_latency,
            "min_latency": self.min_latency,
            "continuous_failures": self.continuous_failures,
            "uptime_hours": self.uptime_hours,
            "last_active_time": format_timestamp(self.last_active_time),
            "relay_addresses": list(self.relay_addresses),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayerMetrics":
        return cls(
            relay_label=data["relay_label"],
            total_tests=int(data["total_tests"]),
            success_count=int(data["success_count"]),
            failure_count=int(data["failure_count"]),
            success_rate=float(data["success_rate"]),
            avg_latency=float(data["avg_latency"]),
            max_latency=int(data["max_latency"]),
            min_latency=int(data["min_latency"]),
            continuous_failures=int(data["continuous_failures"]),
            uptime_hours=float(data["uptime_hours"]),
            last_active_time=parse_timestamp(data["last_active_time"]),
            relay_addresses=list(data.get("relay_addresses", [])),
        )
