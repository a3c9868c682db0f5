"""
Minimal protobuf wire codec for the Cosmos transactions the engine reads.

Only the handful of fields needed for attribution are understood:

    TxRaw                 1: body_bytes    2: auth_info_bytes   3: signatures
    TxBody                1: messages (Any, repeated)   2: memo
    Any                   1: type_url      2: value
    MsgRecvPacket         4: signer
    QueryPacketAcknowledgementRequest   1: port_id  2: channel_id  3: sequence
    QueryPacketAcknowledgementResponse  1: acknowledgement
    QueryChannelRequest   1: port_id       2: channel_id
    QueryChannelResponse  1: channel       Channel 1: state

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

MSG_RECV_PACKET = "/ibc.core.channel.v1.MsgRecvPacket"
PACKET_ACK_QUERY_PATH = "/ibc.core.channel.v1.Query/PacketAcknowledgement"
CHANNEL_QUERY_PATH = "/ibc.core.channel.v1.Query/Channel"

CHANNEL_STATES = {
    0: "STATE_UNINITIALIZED_UNSPECIFIED",
    1: "STATE_INIT",
    2: "STATE_TRYOPEN",
    3: "STATE_OPEN",
    4: "STATE_CLOSED",
}
CHANNEL_STATE_OPEN = 3

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_BYTES = 2
WIRE_FIXED32 = 5


class ProtobufDecodeError(ValueError):
    """Malformed protobuf wire data."""
    pass


# =============================================================================
# WIRE PRIMITIVES
# =============================================================================

def encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError("varint must be non-negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes, pos: int) -> Tuple[int, int]:
    """Return (value, next position)."""
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ProtobufDecodeError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ProtobufDecodeError("varint too long")


def iter_fields(data: bytes) -> Iterator[Tuple[int, int, Any]]:
    """Yield (field_number, wire_type, value) for each field in a message."""
    pos = 0
    while pos < len(data):
        key, pos = decode_varint(data, pos)
        field_number, wire_type = key >> 3, key & 0x07
        if field_number == 0:
            raise ProtobufDecodeError("field number 0")
        if wire_type == WIRE_VARINT:
            value, pos = decode_varint(data, pos)
        elif wire_type == WIRE_BYTES:
            length, pos = decode_varint(data, pos)
            if pos + length > len(data):
                raise ProtobufDecodeError("truncated length-delimited field")
            value = data[pos:pos + length]
            pos += length
        elif wire_type == WIRE_FIXED64:
            if pos + 8 > len(data):
                raise ProtobufDecodeError("truncated fixed64")
            value = int.from_bytes(data[pos:pos + 8], "little")
            pos += 8
        elif wire_type == WIRE_FIXED32:
            if pos + 4 > len(data):
                raise ProtobufDecodeError("truncated fixed32")
            value = int.from_bytes(data[pos:pos + 4], "little")
            pos += 4
        else:
            raise ProtobufDecodeError(f"unsupported wire type {wire_type}")
        yield field_number, wire_type, value


def encode_bytes_field(field_number: int, value: bytes) -> bytes:
    return encode_varint((field_number << 3) | WIRE_BYTES) + encode_varint(len(value)) + value


def encode_string_field(field_number: int, value: str) -> bytes:
    return encode_bytes_field(field_number, value.encode("utf-8"))


def encode_varint_field(field_number: int, value: int) -> bytes:
    return encode_varint((field_number << 3) | WIRE_VARINT) + encode_varint(value)


# =============================================================================
# TRANSACTIONS
# =============================================================================

@dataclass
class AnyMessage:
    type_url: str
    value: bytes = b""


@dataclass
class DecodedTx:
    messages: List[AnyMessage] = field(default_factory=list)
    memo: str = ""

    def first_message(self, type_url: str) -> Optional[AnyMessage]:
        for message in self.messages:
            if message.type_url == type_url:
                return message
        return None


def _body_bytes(raw: bytes) -> bytes:
    for number, wire_type, value in iter_fields(raw):
        if number == 1 and wire_type == WIRE_BYTES:
            return value
    raise ProtobufDecodeError("TxRaw has no body")


def decode_tx(raw: bytes) -> DecodedTx:
    """Decode a TxRaw into its messages and memo; raises ProtobufDecodeError."""
    body = _body_bytes(raw)
    decoded = DecodedTx()
    for number, wire_type, value in iter_fields(body):
        if number == 1 and wire_type == WIRE_BYTES:
            message = AnyMessage(type_url="")
            for any_number, any_type, any_value in iter_fields(value):
                if any_number == 1 and any_type == WIRE_BYTES:
                    message.type_url = any_value.decode("utf-8", errors="replace")
                elif any_number == 2 and any_type == WIRE_BYTES:
                    message.value = any_value
            decoded.messages.append(message)
        elif number == 2 and wire_type == WIRE_BYTES:
            try:
                decoded.memo = value.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ProtobufDecodeError(f"memo is not valid UTF-8: {e}") from e
    return decoded


def scrape_memo(raw: bytes) -> Optional[str]:
    """
    Best-effort memo recovery from a transaction that does not decode cleanly.

    Walks the body leniently and returns whatever follows the memo tag,
    truncated at the end of the buffer, as latin-1 text so that every stray
    byte survives for later cleanup.
    """
    try:
        _, pos = decode_varint(raw, 0)
        length, pos = decode_varint(raw, pos)
        body = raw[pos:pos + length]
        pos = 0
        while pos < len(body):
            key, pos = decode_varint(body, pos)
            number, wire_type = key >> 3, key & 0x07
            if wire_type != WIRE_BYTES:
                return None
            length, pos = decode_varint(body, pos)
            if number == 2:
                return body[pos:pos + length].decode("latin-1")
            pos += length
    except ProtobufDecodeError:
        return None
    return None


def decode_recv_packet_signer(value: bytes) -> Optional[str]:
    for number, wire_type, field_value in iter_fields(value):
        if number == 4 and wire_type == WIRE_BYTES:
            return field_value.decode("utf-8", errors="replace") or None
    return None


def tx_hash(raw: bytes) -> str:
    """CometBFT transaction hash: upper-case hex SHA-256 of the raw bytes."""
    return hashlib.sha256(raw).hexdigest().upper()


def decode_base64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtobufDecodeError(f"invalid base64: {e}") from e


# =============================================================================
# IBC QUERIES
# =============================================================================

def encode_packet_ack_request(port_id: str, channel_id: str, sequence: int) -> bytes:
    return (
        encode_string_field(1, port_id)
        + encode_string_field(2, channel_id)
        + encode_varint_field(3, sequence)
    )


def decode_packet_ack_response(data: bytes) -> bytes:
    """Return the acknowledgement bytes, empty when the ledger has none."""
    for number, wire_type, value in iter_fields(data):
        if number == 1 and wire_type == WIRE_BYTES:
            return value
    return b""


def encode_channel_request(port_id: str, channel_id: str) -> bytes:
    return encode_string_field(1, port_id) + encode_string_field(2, channel_id)


def decode_channel_state(data: bytes) -> Optional[int]:
    """Channel state enum from a QueryChannelResponse; None when no channel is present."""
    for number, wire_type, value in iter_fields(data):
        if number == 1 and wire_type == WIRE_BYTES:
            for channel_number, channel_type, channel_value in iter_fields(value):
                if channel_number == 1 and channel_type == WIRE_VARINT:
                    return channel_value
            return 0
    return None


# =============================================================================
# EVENT ATTRIBUTES
# =============================================================================

_PLAIN_KEY = re.compile(r"^[a-z0-9_.]+$")


def _maybe_base64_text(value: str) -> Optional[str]:
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    if decoded and decoded.isprintable():
        return decoded
    return None


def normalize_attributes(attributes: List[Dict[str, Any]]) -> List[Tuple[str, str]]:
    """
    Return event attributes as plain (key, value) text pairs.

    Older indexers base64-encode both key and value. Attribute keys are
    lower-case identifiers, so a key that is not one but decodes to one marks
    the pair as encoded.
    """
    pairs: List[Tuple[str, str]] = []
    for attr in attributes or []:
        key = str(attr.get("key") or "")
        value = attr.get("value")
        value = "" if value is None else str(value)
        if key and not _PLAIN_KEY.match(key):
            decoded_key = _maybe_base64_text(key)
            if decoded_key is not None and _PLAIN_KEY.match(decoded_key):
                key = decoded_key
                if value:
                    value = _maybe_base64_text(value) or value
        pairs.append((key, value))
    return pairs
