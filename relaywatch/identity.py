"""
Relay identity attribution.

Works out which relayer delivered a packet from the delivery transaction:

    address   1. `sender` of the first `message` event
              2. `signer` of the MsgRecvPacket in the decoded body

    label     1. decoded transaction memo, trimmed
              2. memo scraped from an undecodable body, normalized

Memos equal to the engine's own probe marker carry no identity and are
dropped. The recv_packet `packet_data` memo is the sender's annotation and
is never read as a label. Every lookup degrades to None instead of raising.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import re
import time
from typing import Iterator, Optional, Tuple

from relaywatch.clients import IndexedTx
from relaywatch.models import RelayIdentity
from relaywatch.observability import RelayLayer, RelayLogger, get_logger
from relaywatch.txcodec import (
    MSG_RECV_PACKET,
    ProtobufDecodeError,
    decode_recv_packet_signer,
    decode_tx,
    scrape_memo,
)

RELAYED_BY_TAG = "relayed-by:"

_CLEAN_START = re.compile(r"^[a-zA-Z0-9\[\]().-]")
_TRAILING_BINARY = re.compile(r"[\x00-\x1f\x7f-\xff]+.*$", re.DOTALL)


def normalize_label(text: Optional[str]) -> Optional[str]:
    """
    Strip protobuf residue from a memo recovered out of raw bytes.

    Text that already starts with an ordinary character is only trimmed.
    Otherwise leading control and non-ASCII characters are dropped, the
    string is cut at the first run of non-printable characters, and escaped
    quotes and backslashes are unescaped. Returns None when nothing is left.
    """
    if text is None:
        return None
    if _CLEAN_START.match(text):
        return text.strip() or None

    start = 0
    while start < len(text) and (ord(text[start]) < 0x20 or ord(text[start]) >= 0x7F):
        start += 1
    cleaned = _TRAILING_BINARY.sub("", text[start:])
    cleaned = cleaned.replace('\\"', '"').replace("\\\\", "\\")
    return cleaned.strip() or None


def strip_relayed_by(label: str) -> str:
    """Drop an optional leading `relayed-by:` tag."""
    if label.startswith(RELAYED_BY_TAG):
        return label[len(RELAYED_BY_TAG):].strip()
    return label


class ProbeMarker:
    """The reserved memo format of the engine's own probes."""

    def __init__(self, prefix: str = "IBC-relay-test"):
        self.prefix = prefix
        self._pattern = re.compile(rf"{re.escape(prefix)}-(?:[A-Za-z0-9_.]+-)*\d+")

    def make(self, tag: Optional[str] = None, now_ms: Optional[int] = None) -> str:
        stamp = now_ms if now_ms is not None else int(time.time() * 1000)
        if tag:
            return f"{self.prefix}-{tag}-{stamp}"
        return f"{self.prefix}-{stamp}"

    def matches(self, memo: Optional[str]) -> bool:
        if not memo:
            return False
        return self._pattern.fullmatch(memo.strip()) is not None


class IdentityResolver:
    """Resolves (address, label) for a delivery transaction."""

    def __init__(
        self,
        marker: Optional[ProbeMarker] = None,
        logger: Optional[RelayLogger] = None,
    ):
        self.marker = marker or ProbeMarker()
        self._log = logger or get_logger("resolver", RelayLayer.IDENTITY)

    def resolve(self, tx: IndexedTx) -> RelayIdentity:
        identity = RelayIdentity(address=self.resolve_address(tx), label=self.resolve_label(tx))
        self._log.debug(
            "Relay identity resolved",
            tx_hash=tx.hash,
            address=identity.address,
            label=identity.label,
        )
        return identity

    def resolve_address(self, tx: IndexedTx) -> Optional[str]:
        for event in tx.events_of("message"):
            sender = event.get("sender")
            if sender:
                return sender

        if not tx.raw:
            return None
        try:
            decoded = decode_tx(tx.raw)
            message = decoded.first_message(MSG_RECV_PACKET)
            if message is not None:
                return decode_recv_packet_signer(message.value)
        except ProtobufDecodeError as e:
            self._log.debug("Signer lookup failed", tx_hash=tx.hash, reason=str(e))
        return None

    def resolve_label(self, tx: IndexedTx) -> Optional[str]:
        for source, candidate, recovered in self._memo_candidates(tx):
            if recovered:
                label = normalize_label(candidate)
            else:
                label = (candidate or "").strip() or None
            if label is None:
                continue
            if self.marker.matches(label):
                self._log.debug("Skipping probe marker memo", tx_hash=tx.hash, source=source)
                continue
            return label
        return None

    def _memo_candidates(self, tx: IndexedTx) -> Iterator[Tuple[str, Optional[str], bool]]:
        """Yield (source, memo, recovered); recovered memos need residue cleanup."""
        if not tx.raw:
            return
        try:
            yield "tx_body", decode_tx(tx.raw).memo, False
        except ProtobufDecodeError as e:
            self._log.debug("Transaction body did not decode, scraping memo", tx_hash=tx.hash, reason=str(e))
            yield "scraped", scrape_memo(tx.raw), True
