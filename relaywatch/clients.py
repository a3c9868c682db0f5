"""
RELAYWATCH Ledger Clients

Interfaces the engine uses to talk to the two ledgers, a CometBFT JSON-RPC
implementation over httpx, and in-memory mocks for tests and dry runs.

    ┌──────────────────────┐      ┌───────────────────────────────────┐
    │ LedgerClient         │      │ CometRpcClient (httpx)            │
    │   get_height         │◄─────│   /status  /block  /tx            │
    │   get_block / get_tx │      │   /tx_search  /abci_query         │
    │   abci_query         │      └───────────────────────────────────┘
    │ TxSearchClient       │      ┌───────────────────────────────────┐
    │   tx_search          │◄─────│ MockLedger (in memory)            │
    └──────────────────────┘      └───────────────────────────────────┘
    ┌──────────────────────┐
    │ Signer               │◄───── wallet integration (external), MockSigner
    │   sign_and_broadcast │
    └──────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

import httpx

from relaywatch.errors import QueryTransientFailure
from relaywatch.models import parse_timestamp
from relaywatch.observability import RelayLayer, RelayLogger, get_logger
from relaywatch.txcodec import (
    CHANNEL_QUERY_PATH,
    CHANNEL_STATE_OPEN,
    PACKET_ACK_QUERY_PATH,
    ProtobufDecodeError,
    decode_base64,
    encode_bytes_field,
    encode_channel_request,
    encode_packet_ack_request,
    encode_varint_field,
    normalize_attributes,
    tx_hash,
)


# =============================================================================
# WIRE TYPES
# =============================================================================

@dataclass
class TxEvent:
    """An ABCI event with plain-text attributes."""
    type: str
    attributes: List[Tuple[str, str]] = field(default_factory=list)

    def get(self, key: str) -> Optional[str]:
        for attr_key, value in self.attributes:
            if attr_key == key:
                return value
        return None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TxEvent":
        return cls(
            type=str(data.get("type", "")),
            attributes=normalize_attributes(data.get("attributes") or []),
        )


@dataclass
class IndexedTx:
    """A transaction included in a block, with its execution events."""
    hash: str
    height: int
    code: int = 0
    events: List[TxEvent] = field(default_factory=list)
    raw: bytes = b""
    log: str = ""

    def events_of(self, event_type: str) -> List[TxEvent]:
        return [e for e in self.events if e.type == event_type]

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "IndexedTx":
        result = data.get("tx_result") or {}
        raw_b64 = data.get("tx") or ""
        return cls(
            hash=str(data.get("hash", "")).upper(),
            height=int(data.get("height", 0)),
            code=int(result.get("code", 0) or 0),
            events=[TxEvent.from_json(e) for e in result.get("events") or []],
            raw=decode_base64(raw_b64) if raw_b64 else b"",
            log=str(result.get("log") or ""),
        )


@dataclass
class Block:
    height: int
    time: Optional[datetime] = None
    txs: List[bytes] = field(default_factory=list)


@dataclass
class AbciQueryResult:
    code: int
    value: bytes = b""
    log: str = ""


@dataclass
class BroadcastReceipt:
    """Result of broadcasting a signed transaction and waiting for inclusion."""
    code: int
    tx_hash: str
    raw_log: str = ""
    height: int = 0
    gas_used: int = 0
    gas_wanted: int = 0
    events: List[TxEvent] = field(default_factory=list)


# StdFee mapping, "auto", or a gas multiplier applied to simulated gas.
Fee = Union[Dict[str, Any], str, float]


# =============================================================================
# PROTOCOLS
# =============================================================================

class LedgerClient(Protocol):
    """Read access to one ledger."""

    async def get_height(self) -> int:
        ...

    async def get_block(self, height: int) -> Block:
        ...

    async def get_tx(self, hash: str) -> Optional[IndexedTx]:
        """Return the transaction, or None when the ledger does not know it."""
        ...

    async def abci_query(self, path: str, data: bytes) -> AbciQueryResult:
        ...


class TxSearchClient(Protocol):
    """Indexed transaction search (CometBFT tx_search)."""

    async def tx_search(
        self,
        query: str,
        per_page: int = 10,
        order_by: str = "desc",
    ) -> List[IndexedTx]:
        ...


class IndexedLedgerClient(LedgerClient, TxSearchClient, Protocol):
    """A ledger whose node also runs the transaction indexer."""


class Signer(Protocol):
    """
    Signs and broadcasts transactions for the probe account.

    Key management lives outside this package; the signer only has to honour
    the fee it is given ("auto" or a float multiplier means simulate first).
    """

    @property
    def address(self) -> str:
        ...

    async def sign_and_broadcast(
        self,
        messages: List[Dict[str, Any]],
        fee: Fee,
        memo: str,
    ) -> BroadcastReceipt:
        ...


# =============================================================================
# COMETBFT JSON-RPC
# =============================================================================

class CometRpcClient:
    """
    LedgerClient and TxSearchClient over CometBFT's URI JSON-RPC endpoints.

    Every transport or RPC error surfaces as QueryTransientFailure so the
    caller can abandon the current poll tick and try again on the next one.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[RelayLogger] = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self._log = logger or get_logger("rpc", RelayLayer.CLIENT)
        self._client = httpx.AsyncClient(
            base_url=self.rpc_url,
            timeout=timeout or httpx.Timeout(30.0, connect=10.0),
            transport=transport,
        )

    async def __aenter__(self) -> "CometRpcClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._client.get(f"/{endpoint}", params=params)
        except httpx.HTTPError as e:
            raise QueryTransientFailure(endpoint, f"{type(e).__name__}: {e}") from e

        # RPC errors may arrive with a 500 status; prefer the JSON error body.
        try:
            payload = response.json()
        except ValueError as e:
            if response.is_error:
                raise QueryTransientFailure(endpoint, f"HTTP {response.status_code}") from e
            raise QueryTransientFailure(endpoint, f"invalid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise QueryTransientFailure(endpoint, "unexpected response shape")
        if payload.get("error"):
            error = payload["error"]
            detail = error.get("data") or error.get("message") if isinstance(error, dict) else error
            raise QueryTransientFailure(endpoint, str(detail))
        if response.is_error:
            raise QueryTransientFailure(endpoint, f"HTTP {response.status_code}")
        result = payload.get("result")
        if not isinstance(result, dict):
            raise QueryTransientFailure(endpoint, "missing result")
        return result

    async def status(self) -> Dict[str, Any]:
        return await self._call("status")

    async def get_height(self) -> int:
        result = await self.status()
        try:
            return int(result["sync_info"]["latest_block_height"])
        except (KeyError, TypeError, ValueError) as e:
            raise QueryTransientFailure("status", "no latest_block_height") from e

    async def get_block(self, height: int) -> Block:
        result = await self._call("block", {"height": height})
        block = result.get("block") or {}
        header = block.get("header") or {}
        txs = (block.get("data") or {}).get("txs") or []
        try:
            return Block(
                height=int(header.get("height", height)),
                time=parse_timestamp(_trim_nanos(header["time"])) if header.get("time") else None,
                txs=[decode_base64(t) for t in txs],
            )
        except (ValueError, ProtobufDecodeError) as e:
            raise QueryTransientFailure("block", f"undecodable block {height}: {e}") from e

    async def get_tx(self, hash: str) -> Optional[IndexedTx]:
        try:
            result = await self._call("tx", {"hash": f"0x{hash}"})
        except QueryTransientFailure as e:
            if "not found" in e.reason:
                return None
            raise
        return self._indexed(result, "tx")

    async def tx_search(
        self,
        query: str,
        per_page: int = 10,
        order_by: str = "desc",
    ) -> List[IndexedTx]:
        result = await self._call(
            "tx_search",
            {"query": f'"{query}"', "per_page": per_page, "order_by": f'"{order_by}"'},
        )
        self._log.debug("tx_search returned", query=query, total_count=result.get("total_count"))
        return [self._indexed(tx, "tx_search") for tx in result.get("txs") or []]

    async def abci_query(self, path: str, data: bytes) -> AbciQueryResult:
        result = await self._call("abci_query", {"path": f'"{path}"', "data": f"0x{data.hex()}"})
        response = result.get("response") or {}
        value = response.get("value") or ""
        try:
            return AbciQueryResult(
                code=int(response.get("code", 0) or 0),
                value=decode_base64(value) if value else b"",
                log=str(response.get("log") or ""),
            )
        except ProtobufDecodeError as e:
            raise QueryTransientFailure("abci_query", str(e)) from e

    @staticmethod
    def _indexed(data: Dict[str, Any], endpoint: str) -> IndexedTx:
        try:
            return IndexedTx.from_json(data)
        except (TypeError, ValueError) as e:
            raise QueryTransientFailure(endpoint, f"undecodable transaction: {e}") from e


def _trim_nanos(value: str) -> str:
    """CometBFT timestamps carry nanoseconds; fromisoformat takes at most micros."""
    return re.sub(r"(\.\d{6})\d+", r"\1", value)


# =============================================================================
# MOCKS
# =============================================================================

_QUERY_TERM = re.compile(r"([\w.]+)\s*(=|>=|<=)\s*'?([^'\s]+)'?")


class MockLedger:
    """
    In-memory ledger for tests and dry runs.

    Supports the tx_search subset the engine issues (equality on event
    attributes plus tx.height bounds), records every query, and can be told
    to fail the next N calls of a method.
    """

    def __init__(self, height: int = 1000):
        self.height = height
        self.blocks: Dict[int, List[bytes]] = {}
        self.txs: Dict[str, IndexedTx] = {}
        self.acks: Dict[Tuple[str, str, int], bytes] = {}
        self.channels: Dict[Tuple[str, str], int] = {}
        self.search_queries: List[str] = []
        self.calls: Dict[str, int] = {}
        self._failures: Dict[str, int] = {}

    def fail(self, method: str, times: int = 1) -> None:
        self._failures[method] = self._failures.get(method, 0) + times

    def _enter(self, method: str) -> None:
        self.calls[method] = self.calls.get(method, 0) + 1
        if self._failures.get(method, 0) > 0:
            self._failures[method] -= 1
            raise QueryTransientFailure(method, "injected failure")

    def add_tx(self, tx: IndexedTx) -> IndexedTx:
        self.txs[tx.hash] = tx
        if tx.raw:
            self.blocks.setdefault(tx.height, []).append(tx.raw)
        return tx

    def include(self, raw: bytes, height: int, events: Optional[List[TxEvent]] = None, code: int = 0) -> IndexedTx:
        """Add raw transaction bytes at a height, hashed the way the ledger hashes them."""
        return self.add_tx(IndexedTx(hash=tx_hash(raw), height=height, code=code, events=list(events or []), raw=raw))

    def acknowledge(self, port_id: str, channel_id: str, sequence: int, ack: bytes = b"\x01") -> None:
        self.acks[(port_id, channel_id, sequence)] = ack

    def set_channel(self, port_id: str, channel_id: str, state: int = CHANNEL_STATE_OPEN) -> None:
        self.channels[(port_id, channel_id)] = state

    async def get_height(self) -> int:
        self._enter("get_height")
        return self.height

    async def get_block(self, height: int) -> Block:
        self._enter("get_block")
        if height > self.height:
            raise QueryTransientFailure("block", f"height {height} is not available yet")
        return Block(height=height, txs=list(self.blocks.get(height, [])))

    async def get_tx(self, hash: str) -> Optional[IndexedTx]:
        self._enter("get_tx")
        return self.txs.get(hash.upper())

    async def abci_query(self, path: str, data: bytes) -> AbciQueryResult:
        self._enter("abci_query")
        if path == CHANNEL_QUERY_PATH:
            for (port_id, channel_id), state in self.channels.items():
                if encode_channel_request(port_id, channel_id) == data:
                    return AbciQueryResult(code=0, value=encode_bytes_field(1, encode_varint_field(1, state)))
            return AbciQueryResult(code=22, log="channel not found")
        if path != PACKET_ACK_QUERY_PATH:
            return AbciQueryResult(code=1, log=f"unknown query path {path}")
        for (port_id, channel_id, sequence), ack in self.acks.items():
            if encode_packet_ack_request(port_id, channel_id, sequence) == data:
                return AbciQueryResult(code=0, value=encode_bytes_field(1, ack))
        return AbciQueryResult(code=0, value=b"")

    async def tx_search(
        self,
        query: str,
        per_page: int = 10,
        order_by: str = "desc",
    ) -> List[IndexedTx]:
        self._enter("tx_search")
        self.search_queries.append(query)
        matches = [tx for tx in self.txs.values() if _matches_query(tx, query)]
        matches.sort(key=lambda tx: tx.height, reverse=(order_by == "desc"))
        return matches[:per_page]


def _matches_query(tx: IndexedTx, query: str) -> bool:
    for key, op, value in _QUERY_TERM.findall(query):
        if key == "tx.height":
            bound = int(value)
            if op == ">=" and tx.height < bound:
                return False
            if op == "<=" and tx.height > bound:
                return False
            if op == "=" and tx.height != bound:
                return False
            continue
        event_type, _, attr = key.rpartition(".")
        if not any(e.get(attr) == value for e in tx.events_of(event_type)):
            return False
    return True


class MockSigner:
    """Signer returning queued receipts (or raising queued exceptions)."""

    def __init__(self, address: str = "cosmos1probe", receipts: Optional[List[Any]] = None):
        self._address = address
        self._queue: List[Any] = list(receipts or [])
        self.broadcasts: List[Tuple[List[Dict[str, Any]], Fee, str]] = []

    @property
    def address(self) -> str:
        return self._address

    def queue(self, item: Any) -> None:
        self._queue.append(item)

    async def sign_and_broadcast(
        self,
        messages: List[Dict[str, Any]],
        fee: Fee,
        memo: str,
    ) -> BroadcastReceipt:
        self.broadcasts.append((messages, fee, memo))
        item = self._queue.pop(0) if self._queue else BroadcastReceipt(
            code=0,
            tx_hash=f"{len(self.broadcasts):064X}",
            raw_log='[{"events":[{"type":"send_packet","attributes":'
                    f'[{{"key":"packet_sequence","value":"{len(self.broadcasts)}"}}]}}]}}]',
        )
        if isinstance(item, BaseException):
            raise item
        return item
