"""
Relay identity attribution tests: memo cleanup, probe markers and the
address/label resolution order.

Run with: pytest tests/test_identity.py -v
"""

import json

import pytest

from relaywatch.clients import IndexedTx, TxEvent
from relaywatch.identity import (
    IdentityResolver,
    ProbeMarker,
    normalize_label,
    strip_relayed_by,
)
from relaywatch.txcodec import (
    MSG_RECV_PACKET,
    encode_bytes_field,
    encode_string_field,
)


def _recv_packet_tx_raw(signer: str = "cosmos1relayer", memo: bytes = b"") -> bytes:
    msg = encode_string_field(4, signer)
    any_msg = encode_string_field(1, MSG_RECV_PACKET) + encode_bytes_field(2, msg)
    body = encode_bytes_field(1, any_msg)
    if memo:
        body += encode_bytes_field(2, memo)
    return encode_bytes_field(1, body) + encode_bytes_field(2, b"auth-info")


def _packet_event(memo: str) -> TxEvent:
    data = json.dumps({"amount": "1", "denom": "peaka", "memo": memo})
    return TxEvent("recv_packet", [("packet_sequence", "7"), ("packet_data", data)])


# =============================================================================
# LABEL NORMALIZATION
# =============================================================================

class TestNormalizeLabel:
    """Protobuf residue cleanup on recovered memos."""

    def test_clean_text_only_trimmed(self):
        assert normalize_label("relayer-A  ") == "relayer-A"

    def test_bracketed_label_is_clean(self):
        assert normalize_label("[hermes] v1.8") == "[hermes] v1.8"

    def test_strips_leading_control_and_trailing_binary(self):
        assert normalize_label("\x12\x0bHermes v1\x00\x01garbage") == "Hermes v1"

    def test_high_bytes_are_residue(self):
        assert normalize_label("\xc2\x9aRelayerX\xff\xfeJUNK") == "RelayerX"

    def test_unescapes_quotes_and_backslashes(self):
        assert normalize_label('\x01say \\"hi\\" \\\\ ok') == 'say "hi" \\ ok'

    @pytest.mark.parametrize("text", [None, "", "   ", "\x00\x01\x02", "\n\x05"])
    def test_nothing_left_is_none(self, text):
        assert normalize_label(text) is None


class TestRelayedBy:
    def test_strips_leading_tag(self):
        assert strip_relayed_by("relayed-by: Alpha Relayer ") == "Alpha Relayer"

    def test_leaves_other_labels(self):
        assert strip_relayed_by("Alpha relayed-by: x") == "Alpha relayed-by: x"

    def test_tag_only_becomes_empty(self):
        assert strip_relayed_by("relayed-by:") == ""


# =============================================================================
# PROBE MARKER
# =============================================================================

class TestProbeMarker:
    """Memos reserved for the engine's own probes."""

    def test_make_plain(self):
        assert ProbeMarker().make(now_ms=1700000000000) == "IBC-relay-test-1700000000000"

    def test_make_tagged(self):
        assert ProbeMarker("probe").make(tag="batch-3", now_ms=42) == "probe-batch-3-42"

    def test_made_memos_match(self):
        marker = ProbeMarker()
        assert marker.matches(marker.make())
        assert marker.matches(marker.make(tag="stability-12"))

    @pytest.mark.parametrize("memo", [None, "", "relayer-1", "IBC-relay-test-", "IBC-relay-test-abc", "xIBC-relay-test-1"])
    def test_non_markers(self, memo):
        assert not ProbeMarker().matches(memo)

    def test_prefix_is_literal(self):
        marker = ProbeMarker("a.b")
        assert marker.matches("a.b-1")
        assert not marker.matches("axb-1")


# =============================================================================
# RESOLVER
# =============================================================================

class TestIdentityResolver:
    """Address and label resolution order."""

    def test_address_from_message_sender(self):
        tx = IndexedTx(
            hash="AA",
            height=10,
            events=[TxEvent("message", [("action", "recv"), ("sender", "cosmos1sender")])],
            raw=_recv_packet_tx_raw(signer="cosmos1signer"),
        )
        assert IdentityResolver().resolve_address(tx) == "cosmos1sender"

    def test_address_from_recv_packet_signer(self):
        tx = IndexedTx(hash="AA", height=10, raw=_recv_packet_tx_raw(signer="cosmos1signer"))
        assert IdentityResolver().resolve_address(tx) == "cosmos1signer"

    def test_address_unresolved(self):
        assert IdentityResolver().resolve_address(IndexedTx(hash="AA", height=10)) is None

    def test_address_undecodable_body(self):
        tx = IndexedTx(hash="AA", height=10, raw=b"\xff\xff\xff")
        assert IdentityResolver().resolve_address(tx) is None

    def test_label_from_tx_memo(self):
        tx = IndexedTx(hash="AA", height=10, raw=_recv_packet_tx_raw(memo=b"relayed-by: Alpha"))
        assert IdentityResolver().resolve_label(tx) == "relayed-by: Alpha"

    def test_label_scraped_from_invalid_utf8_memo(self):
        tx = IndexedTx(hash="AA", height=10, raw=_recv_packet_tx_raw(memo=b"\x0aRelayerX\xff\xfe"))
        assert IdentityResolver().resolve_label(tx) == "RelayerX"

    def test_packet_data_memo_is_not_a_label(self):
        """packet_data carries the sender's memo, not the relayer's."""
        tx = IndexedTx(
            hash="AA",
            height=10,
            raw=_recv_packet_tx_raw(),
            events=[_packet_event("nightly-check-42")],
        )
        assert IdentityResolver().resolve_label(tx) is None

    @pytest.mark.parametrize(
        "memo",
        ["\u2728 Z\u00fcrich relayer", "\u03a9mega-relay", "\u9a8c\u8bc1\u8005 relayer", "\u00abRelayer\u00bb Z\u00fcrich"],
    )
    def test_utf8_tx_memo_kept_verbatim(self, memo):
        tx = IndexedTx(hash="AA", height=10, raw=_recv_packet_tx_raw(memo=memo.encode("utf-8")))
        assert IdentityResolver().resolve_label(tx) == memo

    def test_utf8_tx_memo_only_trimmed(self):
        tx = IndexedTx(hash="AA", height=10, raw=_recv_packet_tx_raw(memo=" \u03a9mega \n".encode("utf-8")))
        assert IdentityResolver().resolve_label(tx) == "\u03a9mega"

    def test_probe_marker_memo_is_skipped(self):
        """The probe's own memo can reappear on the delivery tx and never names a relayer."""
        tx = IndexedTx(
            hash="AA",
            height=10,
            raw=_recv_packet_tx_raw(memo=b"IBC-relay-test-1700000000000"),
            events=[_packet_event("IBC-relay-test-batch-2-1700000000000")],
        )
        assert IdentityResolver().resolve_label(tx) is None

    def test_tx_memo_beats_packet_data(self):
        tx = IndexedTx(
            hash="AA",
            height=10,
            raw=_recv_packet_tx_raw(memo=b"Gamma"),
            events=[_packet_event("Delta")],
        )
        assert IdentityResolver().resolve_label(tx) == "Gamma"

    def test_resolve_combines(self):
        tx = IndexedTx(
            hash="AA",
            height=10,
            raw=_recv_packet_tx_raw(signer="cosmos1signer", memo=b"Alpha"),
        )
        identity = IdentityResolver().resolve(tx)
        assert identity.address == "cosmos1signer"
        assert identity.label == "Alpha"
        assert identity.resolved
