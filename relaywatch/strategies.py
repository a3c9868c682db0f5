"""
Delivery detection strategies.

Each strategy answers one question per poll tick: "has packet N been
delivered?". Strategies are ranked by the tracker and share one interface,
`attempt(sequence_id) -> Delivery | None`. A strategy may raise; the tracker
treats that as "no match this tick".

    ┌──────────────────────────┬──────────────────────────────────────────┐
    │ DestinationSearchStrategy│ tx_search for recv_packet on the         │
    │                          │ destination within [H-W, H+W]            │
    ├──────────────────────────┼──────────────────────────────────────────┤
    │ SourceProofStrategy      │ PacketAcknowledgement proof query on the │
    │                          │ source, evidence looked up best-effort   │
    ├──────────────────────────┼──────────────────────────────────────────┤
    │ BlockScanStrategy        │ walk destination blocks H..H-W and fetch │
    │                          │ each transaction                         │
    └──────────────────────────┴──────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from relaywatch.clients import IndexedLedgerClient, IndexedTx, LedgerClient
from relaywatch.errors import QueryTransientFailure
from relaywatch.identity import IdentityResolver
from relaywatch.models import RelayIdentity
from relaywatch.observability import RelayLayer, RelayLogger, get_logger
from relaywatch.txcodec import (
    PACKET_ACK_QUERY_PATH,
    ProtobufDecodeError,
    decode_packet_ack_response,
    encode_packet_ack_request,
    tx_hash,
)


@dataclass(frozen=True)
class HeightWindow:
    """Inclusive block height range centred on a sampled height."""
    center: int
    width: int

    @property
    def low(self) -> int:
        return max(1, self.center - self.width)

    @property
    def high(self) -> int:
        return self.center + self.width

    def contains(self, height: int) -> bool:
        return self.low <= height <= self.high


@dataclass(frozen=True)
class Delivery:
    """Evidence that a packet reached the destination."""
    strategy: str
    target_tx_hash: Optional[str] = None
    height: Optional[int] = None
    identity: RelayIdentity = RelayIdentity()


def is_matching_recv_packet(tx: IndexedTx, sequence_id: int, channel_id: str) -> bool:
    """True if the transaction succeeded and received packet N from the channel."""
    if tx.code != 0:
        return False
    wanted = str(sequence_id)
    for event in tx.events_of("recv_packet"):
        if event.get("packet_sequence") == wanted and event.get("packet_src_channel") == channel_id:
            return True
    return False


def recv_packet_query(sequence_id: int, channel_id: str, window: HeightWindow) -> str:
    return (
        f"recv_packet.packet_sequence='{sequence_id}' AND "
        f"recv_packet.packet_src_channel='{channel_id}' AND "
        f"tx.height>={window.low} AND tx.height<={window.high}"
    )


class DetectionStrategy(ABC):
    """One way of detecting a delivery."""

    name: str = "strategy"

    @abstractmethod
    async def attempt(self, sequence_id: int) -> Optional[Delivery]:
        ...


class DestinationSearchStrategy(DetectionStrategy):
    """Indexed search for the recv_packet transaction on the destination."""

    name = "destination_search"

    def __init__(
        self,
        destination: IndexedLedgerClient,
        resolver: IdentityResolver,
        channel_id: str,
        window: int = 10,
        per_page: int = 10,
        logger: Optional[RelayLogger] = None,
    ):
        self.destination = destination
        self.resolver = resolver
        self.channel_id = channel_id
        self.window = window
        self.per_page = per_page
        self._log = logger or get_logger("destination_search", RelayLayer.TRACKER)

    async def attempt(self, sequence_id: int) -> Optional[Delivery]:
        height = await self.destination.get_height()
        window = HeightWindow(height, self.window)
        query = recv_packet_query(sequence_id, self.channel_id, window)
        self._log.debug(
            "Searching destination",
            sequence=sequence_id,
            min_height=window.low,
            max_height=window.high,
            current_height=height,
        )

        txs = await self.destination.tx_search(query, per_page=self.per_page, order_by="desc")
        for tx in sorted(txs, key=lambda t: t.height, reverse=True):
            if not window.contains(tx.height):
                self._log.warning(
                    "Search result outside requested window ignored",
                    tx_hash=tx.hash,
                    height=tx.height,
                    min_height=window.low,
                    max_height=window.high,
                )
                continue
            if not is_matching_recv_packet(tx, sequence_id, self.channel_id):
                continue
            return Delivery(
                strategy=self.name,
                target_tx_hash=tx.hash,
                height=tx.height,
                identity=self.resolver.resolve(tx),
            )
        return None


class SourceProofStrategy(DetectionStrategy):
    """
    Acknowledgement proof query on the source ledger.

    A stored acknowledgement proves delivery on its own. The delivering
    transaction is then looked up through `evidence`; failing to find it
    leaves the target hash and identity unresolved but keeps the match.
    """

    name = "source_proof"

    def __init__(
        self,
        source: LedgerClient,
        port_id: str,
        channel_id: str,
        evidence: Optional[DetectionStrategy] = None,
        logger: Optional[RelayLogger] = None,
    ):
        self.source = source
        self.port_id = port_id
        self.channel_id = channel_id
        self.evidence = evidence
        self._log = logger or get_logger("source_proof", RelayLayer.TRACKER)

    async def attempt(self, sequence_id: int) -> Optional[Delivery]:
        request = encode_packet_ack_request(self.port_id, self.channel_id, sequence_id)
        result = await self.source.abci_query(PACKET_ACK_QUERY_PATH, request)
        if result.code != 0 or not result.value:
            return None
        try:
            ack = decode_packet_ack_response(result.value)
        except ProtobufDecodeError as e:
            raise QueryTransientFailure("abci_query", f"undecodable acknowledgement: {e}") from e
        if not ack:
            return None

        self._log.info("Acknowledgement stored on source", sequence=sequence_id, ack_bytes=len(ack))
        evidence = await self._locate(sequence_id)
        if evidence is None:
            return Delivery(strategy=self.name)
        return Delivery(
            strategy=self.name,
            target_tx_hash=evidence.target_tx_hash,
            height=evidence.height,
            identity=evidence.identity,
        )

    async def _locate(self, sequence_id: int) -> Optional[Delivery]:
        if self.evidence is None:
            return None
        try:
            return await self.evidence.attempt(sequence_id)
        except Exception as e:
            self._log.warning(
                "Delivery evidence lookup failed",
                sequence=sequence_id,
                reason=f"{type(e).__name__}: {e}",
            )
            return None


class BlockScanStrategy(DetectionStrategy):
    """
    Walk recent destination blocks newest first, fetching every transaction.

    Expensive; meant for nodes whose indexer is disabled. Never reads above
    the sampled height or below the window.
    """

    name = "block_scan"

    def __init__(
        self,
        destination: LedgerClient,
        resolver: IdentityResolver,
        channel_id: str,
        window: int = 10,
        logger: Optional[RelayLogger] = None,
    ):
        self.destination = destination
        self.resolver = resolver
        self.channel_id = channel_id
        self.window = window
        self._log = logger or get_logger("block_scan", RelayLayer.TRACKER)

    async def attempt(self, sequence_id: int) -> Optional[Delivery]:
        height = await self.destination.get_height()
        window = HeightWindow(height, self.window)
        for block_height in range(min(window.high, height), window.low - 1, -1):
            try:
                block = await self.destination.get_block(block_height)
            except QueryTransientFailure as e:
                self._log.debug("Skipping unreadable block", height=block_height, reason=e.reason)
                continue
            for raw in block.txs:
                digest = tx_hash(raw)
                try:
                    tx = await self.destination.get_tx(digest)
                except QueryTransientFailure as e:
                    self._log.debug("Skipping unreadable transaction", tx_hash=digest, reason=e.reason)
                    continue
                if tx is not None and is_matching_recv_packet(tx, sequence_id, self.channel_id):
                    return Delivery(
                        strategy=self.name,
                        target_tx_hash=tx.hash,
                        height=block_height,
                        identity=self.resolver.resolve(tx),
                    )
        return None
