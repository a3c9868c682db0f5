"""
Probe submission tests: fee policies, message construction, failure
reporting and serialized broadcasts.

Run with: pytest tests/test_initiator.py -v
"""

import asyncio
from datetime import timedelta

import pytest

from relaywatch.clients import BroadcastReceipt, MockLedger, MockSigner, TxEvent
from relaywatch.config import RelayWatchConfig
from relaywatch.initiator import (
    MSG_TRANSFER,
    AutoFee,
    FixedFee,
    TransferInitiator,
    UnitPriceFee,
    fee_policy_from_config,
)
from relaywatch.models import MISSING_TX_HASH


def _initiator(signer, clock, destination=None, **kwargs):
    return TransferInitiator(
        signer=signer,
        destination=destination or MockLedger(height=1000),
        port_id="transfer",
        channel_id="channel-0",
        amount="1000000000",
        denom="peaka",
        receiver="cosmos1receiver",
        clock=clock,
        **kwargs,
    )


# =============================================================================
# FEES
# =============================================================================

class TestFeePolicies:
    def test_unit_price(self):
        fee = UnitPriceFee(denom="peaka", gas_limit=150000, gas_price=25000000000).fee()
        assert fee == {"amount": [{"denom": "peaka", "amount": "3750000000000000"}], "gas": "150000"}

    def test_fixed(self):
        fee = FixedFee(denom="uatom", amount="5000", gas_limit=200000).fee()
        assert fee == {"amount": [{"denom": "uatom", "amount": "5000"}], "gas": "200000"}

    def test_auto(self):
        assert AutoFee().fee() == "auto"
        assert AutoFee(adjustment=1.3).fee() == 1.3

    def test_from_default_config(self):
        policy = fee_policy_from_config(RelayWatchConfig())
        assert isinstance(policy, UnitPriceFee)
        assert policy.gas_price == 25000000000

    def test_from_config_fixed_amount(self):
        config = RelayWatchConfig()
        config.fee.amount.set("7500")
        policy = fee_policy_from_config(config)
        assert isinstance(policy, FixedFee)
        assert policy.amount == "7500"

    def test_from_config_auto(self):
        config = RelayWatchConfig()
        config.fee.auto.set(True)
        config.fee.amount.set("7500")
        assert fee_policy_from_config(config) == AutoFee(adjustment=1.5)


# =============================================================================
# MESSAGE
# =============================================================================

class TestBuildMessage:
    def test_timeouts(self, clock):
        initiator = _initiator(MockSigner(address="cosmos1sender"), clock)
        message = asyncio.run(initiator.build_message("memo-1"))

        now_ms = int(clock().timestamp() * 1000)
        assert message.timeout_revision_number == 5
        assert message.timeout_revision_height == 2000
        assert message.timeout_timestamp_ns == (now_ms + 60_000) * 1_000_000
        assert message.sender == "cosmos1sender"

    def test_encode_object(self, clock):
        message = asyncio.run(_initiator(MockSigner(), clock).build_message("memo-1"))
        encoded = message.to_encode_object()
        assert encoded["typeUrl"] == MSG_TRANSFER
        value = encoded["value"]
        assert value["sourcePort"] == "transfer"
        assert value["sourceChannel"] == "channel-0"
        assert value["token"] == {"denom": "peaka", "amount": "1000000000"}
        assert value["receiver"] == "cosmos1receiver"
        assert value["timeoutHeight"] == {"revisionNumber": 5, "revisionHeight": 2000}
        assert value["memo"] == "memo-1"


# =============================================================================
# SUBMIT
# =============================================================================

class TestSubmit:
    """submit() never raises; failures come back as results."""

    def test_success_with_raw_log_sequence(self, clock):
        signer = MockSigner()
        result = asyncio.run(_initiator(signer, clock).submit("IBC-relay-test-1"))

        assert result.success
        assert result.sequence_id == 1
        assert result.sequence_pattern == "event_attribute"
        assert result.probe_memo == "IBC-relay-test-1"
        assert result.timestamp == clock()
        messages, fee, memo = signer.broadcasts[0]
        assert memo == "IBC-relay-test-1"
        assert messages[0]["value"]["memo"] == "IBC-relay-test-1"
        assert fee["gas"] == "150000"

    def test_structured_events_preferred(self, clock):
        receipt = BroadcastReceipt(
            code=0,
            tx_hash="AB",
            raw_log='"packet_sequence":"99"',
            events=[TxEvent("send_packet", [("packet_sequence", "12")])],
        )
        result = asyncio.run(_initiator(MockSigner(receipts=[receipt]), clock).submit())
        assert result.sequence_id == 12
        assert result.sequence_pattern == "send_packet_attribute"

    def test_default_memo_is_probe_marker(self, clock):
        initiator = _initiator(MockSigner(), clock)
        result = asyncio.run(initiator.submit())
        assert initiator.marker.matches(result.probe_memo)

    def test_rejected_by_ledger(self, clock):
        receipt = BroadcastReceipt(code=5, tx_hash="CAFE", raw_log="insufficient funds")
        result = asyncio.run(_initiator(MockSigner(receipts=[receipt]), clock).submit())
        assert not result.success
        assert result.tx_hash == "CAFE"
        assert result.error == "Transaction failed with code 5: insufficient funds"
        assert result.sequence_id is None

    def test_broadcast_exception(self, clock):
        result = asyncio.run(_initiator(MockSigner(receipts=[ConnectionError("node down")]), clock).submit())
        assert not result.success
        assert result.tx_hash == ""
        assert result.error == "Exception during IBC transfer: node down"
        assert result.attempt.source_tx_hash == MISSING_TX_HASH

    def test_destination_unreachable_is_a_submission_failure(self, clock):
        destination = MockLedger()
        destination.fail("get_height")
        signer = MockSigner()
        result = asyncio.run(_initiator(signer, clock, destination=destination).submit())
        assert not result.success
        assert result.error.startswith("Exception during IBC transfer:")
        assert signer.broadcasts == []

    def test_unextractable_sequence(self, clock):
        receipt = BroadcastReceipt(code=0, tx_hash="AB", raw_log="ok")
        result = asyncio.run(_initiator(MockSigner(receipts=[receipt]), clock).submit())
        assert result.success
        assert result.sequence_id == 0
        assert result.attempt.sequence_id == 0

    def test_timestamp_taken_after_broadcast(self, clock):
        class SlowSigner(MockSigner):
            async def sign_and_broadcast(self, messages, fee, memo):
                clock.advance(4)
                return await super().sign_and_broadcast(messages, fee, memo)

        start = clock()
        result = asyncio.run(_initiator(SlowSigner(), clock).submit())
        assert result.timestamp == start + timedelta(seconds=4)

    def test_broadcasts_are_serialized(self, clock):
        class TrackingSigner(MockSigner):
            active = 0
            peak = 0

            async def sign_and_broadcast(self, messages, fee, memo):
                TrackingSigner.active += 1
                TrackingSigner.peak = max(TrackingSigner.peak, TrackingSigner.active)
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                TrackingSigner.active -= 1
                return await super().sign_and_broadcast(messages, fee, memo)

        initiator = _initiator(TrackingSigner(), clock)

        async def main():
            return await asyncio.gather(*(initiator.submit(f"IBC-relay-test-{i}") for i in range(3)))

        results = asyncio.run(main())
        assert TrackingSigner.peak == 1
        assert sorted(r.sequence_id for r in results) == [1, 2, 3]


class TestFromConfig:
    def test_wiring(self, clock):
        config = RelayWatchConfig()
        config.channel.channel_id.set("channel-7")
        config.probe.memo_prefix.set("probe")
        config.probe.amount.set(42)
        initiator = TransferInitiator.from_config(config, MockSigner(), MockLedger(), clock=clock)
        assert initiator.channel_id == "channel-7"
        assert initiator.amount == "42"
        assert initiator.marker.prefix == "probe"
        assert isinstance(initiator.fee_policy, UnitPriceFee)
