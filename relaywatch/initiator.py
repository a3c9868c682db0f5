"""
Probe submission on the source ledger.

Builds one MsgTransfer per probe, picks the fee from the configured policy,
broadcasts through the injected Signer and recovers the packet sequence from
the receipt. `submit` never raises: every failure comes back as an
unsuccessful SubmissionResult.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from relaywatch.clients import BroadcastReceipt, Fee, LedgerClient, Signer
from relaywatch.config import RelayWatchConfig
from relaywatch.errors import ExtractionFailure, SubmissionError
from relaywatch.identity import ProbeMarker
from relaywatch.models import SEQUENCE_UNKNOWN, SubmissionResult, utc_now
from relaywatch.observability import RelayLayer, RelayLogger, get_logger
from relaywatch.sequence import SequenceExtractor, sequence_from_events

MSG_TRANSFER = "/ibc.applications.transfer.v1.MsgTransfer"


@dataclass(frozen=True)
class MsgTransfer:
    source_port: str
    source_channel: str
    denom: str
    amount: str
    sender: str
    receiver: str
    timeout_revision_number: int
    timeout_revision_height: int
    timeout_timestamp_ns: int
    memo: str

    def to_encode_object(self) -> Dict[str, Any]:
        return {
            "typeUrl": MSG_TRANSFER,
            "value": {
                "sourcePort": self.source_port,
                "sourceChannel": self.source_channel,
                "token": {"denom": self.denom, "amount": self.amount},
                "sender": self.sender,
                "receiver": self.receiver,
                "timeoutHeight": {
                    "revisionNumber": self.timeout_revision_number,
                    "revisionHeight": self.timeout_revision_height,
                },
                "timeoutTimestamp": self.timeout_timestamp_ns,
                "memo": self.memo,
            },
        }


# =============================================================================
# FEE POLICIES
# =============================================================================

class FeePolicy(ABC):
    name: str = "fee"

    @abstractmethod
    def fee(self) -> Fee:
        ...


@dataclass(frozen=True)
class FixedFee(FeePolicy):
    """A configured fee amount paid as-is."""
    denom: str
    amount: str
    gas_limit: int
    name: str = "fixed"

    def fee(self) -> Fee:
        return {"amount": [{"denom": self.denom, "amount": self.amount}], "gas": str(self.gas_limit)}


@dataclass(frozen=True)
class UnitPriceFee(FeePolicy):
    """Fee computed as gas limit times unit gas price."""
    denom: str
    gas_limit: int
    gas_price: int
    name: str = "unit_price"

    def fee(self) -> Fee:
        amount = str(self.gas_limit * self.gas_price)
        return {"amount": [{"denom": self.denom, "amount": amount}], "gas": str(self.gas_limit)}


@dataclass(frozen=True)
class AutoFee(FeePolicy):
    """Let the signer simulate; the adjustment multiplies simulated gas."""
    adjustment: Optional[float] = None
    name: str = "auto"

    def fee(self) -> Fee:
        return self.adjustment if self.adjustment is not None else "auto"


def fee_policy_from_config(config: RelayWatchConfig) -> FeePolicy:
    fee = config.fee
    if fee.auto.get():
        return AutoFee(adjustment=fee.adjustment.get())
    amount = fee.amount.get()
    if amount:
        return FixedFee(denom=fee.denom.get(), amount=str(amount), gas_limit=fee.gas_limit.get())
    return UnitPriceFee(
        denom=fee.denom.get(),
        gas_limit=fee.gas_limit.get(),
        gas_price=int(fee.gas_price.get()),
    )


# =============================================================================
# INITIATOR
# =============================================================================

class TransferInitiator:
    """Submits probe transfers, one at a time."""

    def __init__(
        self,
        signer: Signer,
        destination: LedgerClient,
        port_id: str,
        channel_id: str,
        amount: str,
        denom: str,
        receiver: str,
        timeout_seconds: int = 60,
        revision_number: int = 5,
        timeout_height_offset: int = 1000,
        fee_policy: Optional[FeePolicy] = None,
        marker: Optional[ProbeMarker] = None,
        extractor: Optional[SequenceExtractor] = None,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[RelayLogger] = None,
    ):
        self.signer = signer
        self.destination = destination
        self.port_id = port_id
        self.channel_id = channel_id
        self.amount = amount
        self.denom = denom
        self.receiver = receiver
        self.timeout_seconds = timeout_seconds
        self.revision_number = revision_number
        self.timeout_height_offset = timeout_height_offset
        self.fee_policy = fee_policy or UnitPriceFee(denom="peaka", gas_limit=150000, gas_price=25000000000)
        self.marker = marker or ProbeMarker()
        self._log = logger or get_logger("initiator", RelayLayer.SUBMIT)
        self.extractor = extractor or SequenceExtractor()
        self._clock = clock or utc_now
        # One signing account: concurrent broadcasts would race its account sequence.
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: RelayWatchConfig,
        signer: Signer,
        destination: LedgerClient,
        **kwargs: Any,
    ) -> "TransferInitiator":
        return cls(
            signer=signer,
            destination=destination,
            port_id=config.channel.port_id.get(),
            channel_id=config.channel.channel_id.get(),
            amount=str(config.probe.amount.get()),
            denom=config.probe.denom.get(),
            receiver=config.probe.receiver.get(),
            timeout_seconds=config.probe.timeout_seconds.get(),
            revision_number=config.channel.revision_number.get(),
            timeout_height_offset=config.channel.timeout_height_offset.get(),
            fee_policy=fee_policy_from_config(config),
            marker=ProbeMarker(config.probe.memo_prefix.get()),
            **kwargs,
        )

    async def build_message(self, memo: str) -> MsgTransfer:
        destination_height = await self.destination.get_height()
        now_ms = int(self._clock().timestamp() * 1000)
        return MsgTransfer(
            source_port=self.port_id,
            source_channel=self.channel_id,
            denom=self.denom,
            amount=self.amount,
            sender=self.signer.address,
            receiver=self.receiver,
            timeout_revision_number=self.revision_number,
            timeout_revision_height=destination_height + self.timeout_height_offset,
            timeout_timestamp_ns=(now_ms + self.timeout_seconds * 1000) * 1_000_000,
            memo=memo,
        )

    async def submit(self, probe_memo: Optional[str] = None) -> SubmissionResult:
        memo = probe_memo or self.marker.make(now_ms=int(self._clock().timestamp() * 1000))
        async with self._lock:
            try:
                receipt = await self._broadcast(memo)
            except Exception as e:
                self._log.error(
                    "Exception during IBC transfer",
                    error_code="SUBMIT_EXCEPTION",
                    exc_info=True,
                    memo=memo,
                )
                return SubmissionResult(
                    tx_hash="",
                    success=False,
                    timestamp=self._clock(),
                    error=f"Exception during IBC transfer: {e}",
                    probe_memo=memo,
                    amount=self.amount,
                )
            timestamp = self._clock()

        if receipt.code != 0:
            failure = SubmissionError(
                f"Transaction failed with code {receipt.code}: {receipt.raw_log}",
                code=receipt.code,
            )
            self._log.error(str(failure), error_code="SUBMIT_REJECTED", tx_hash=receipt.tx_hash)
            return SubmissionResult(
                tx_hash=receipt.tx_hash,
                success=False,
                timestamp=timestamp,
                error=str(failure),
                probe_memo=memo,
                amount=self.amount,
            )

        sequence_id, pattern = self._sequence_of(receipt)
        self._log.info(
            "IBC transfer sent",
            tx_hash=receipt.tx_hash,
            sequence=sequence_id,
            sequence_pattern=pattern,
            height=receipt.height,
            gas_used=receipt.gas_used,
            gas_wanted=receipt.gas_wanted,
        )
        return SubmissionResult(
            tx_hash=receipt.tx_hash,
            success=True,
            timestamp=timestamp,
            sequence_id=sequence_id,
            probe_memo=memo,
            amount=self.amount,
            sequence_pattern=pattern,
        )

    async def _broadcast(self, memo: str) -> BroadcastReceipt:
        message = await self.build_message(memo)
        fee = self.fee_policy.fee()
        self._log.debug(
            "Broadcasting probe",
            memo=memo,
            fee_policy=self.fee_policy.name,
            timeout_height=f"{message.timeout_revision_number}-{message.timeout_revision_height}",
        )
        return await self.signer.sign_and_broadcast([message.to_encode_object()], fee, memo)

    def _sequence_of(self, receipt: BroadcastReceipt) -> Tuple[int, Optional[str]]:
        from_events = sequence_from_events(receipt.events)
        if from_events is not None:
            return from_events, "send_packet_attribute"
        sequence_id, pattern = self.extractor.extract_detailed(receipt.raw_log)
        if sequence_id == SEQUENCE_UNKNOWN:
            failure = ExtractionFailure(f"No packet sequence in receipt {receipt.tx_hash}")
            self._log.warning(str(failure), error_code="EXTRACTION_FAILED", tx_hash=receipt.tx_hash)
        return sequence_id, pattern
