"""Pubsub messages, their protobuf wire encoding and the signature policy."""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Any, Iterator, Tuple

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_BYTES = 2
_WIRE_FIXED32 = 5

# (attribute, field number) in wire order
_WIRE_FIELDS = (
    ("from_peer", 1),
    ("data", 2),
    ("seqno", 3),
    ("topic", 4),
    ("signature", 5),
    ("key", 6),
)
_FIELD_BY_NUMBER = {number: name for name, number in _WIRE_FIELDS}


class MessageSignaturePolicy(enum.IntFlag):
    """Whether signatures are produced, expected and/or verified."""

    SIGNING = 1
    VERIFICATION = 2
    STRICT_SIGN = 3
    STRICT_NO_SIGN = 2
    LAX_SIGN = 1
    LAX_NO_SIGN = 0

    def must_verify(self) -> bool:
        """True when incoming signatures must be checked (or checked to be absent)."""
        return bool(self & MessageSignaturePolicy.VERIFICATION)

    def must_sign(self) -> bool:
        """True when local messages are signed and incoming ones must carry a signature."""
        return bool(self & MessageSignaturePolicy.SIGNING)


def _encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError("varint must be non-negative")
    out = bytearray()
    while True:
        low = value & 0x7F
        value >>= 7
        if value:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _read_varint(data: bytes, pos: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 64:
            raise ValueError("varint overflow")


def _encode_bytes_field(number: int, raw: bytes) -> bytes:
    return _encode_varint(number << 3 | _WIRE_BYTES) + _encode_varint(len(raw)) + raw


def _iter_fields(data: bytes) -> Iterator[Tuple[int, int, Any]]:
    """Yield (field number, wire type, value) for each field of a protobuf message."""
    pos = 0
    end = len(data)
    while pos < end:
        tag, pos = _read_varint(data, pos)
        number, wire_type = tag >> 3, tag & 0x07
        if number == 0:
            raise ValueError("invalid field number 0")
        if wire_type == _WIRE_VARINT:
            value, pos = _read_varint(data, pos)
        elif wire_type == _WIRE_BYTES:
            length, pos = _read_varint(data, pos)
            if pos + length > end:
                raise ValueError("truncated length-delimited field")
            value = data[pos : pos + length]
            pos += length
        elif wire_type in (_WIRE_FIXED64, _WIRE_FIXED32):
            size = 8 if wire_type == _WIRE_FIXED64 else 4
            if pos + size > end:
                raise ValueError("truncated fixed-width field")
            value = data[pos : pos + size]
            pos += size
        else:
            raise ValueError(f"unsupported wire type {wire_type}")
        yield number, wire_type, value


@dataclass
class Message:
    """A pubsub message: the wire fields plus local delivery metadata."""

    from_peer: bytes | None = None
    data: bytes | None = None
    seqno: bytes | None = None
    topic: str | None = None
    signature: bytes | None = None
    key: bytes | None = None
    # local metadata, never sent over the wire
    id: bytes = b""
    received_from: bytes = b""
    validator_data: Any = None
    local: bool = False

    def marshal(self) -> bytes:
        """Encode the wire fields in protobuf format; unset fields are omitted."""
        parts = []
        for name, number in _WIRE_FIELDS:
            value = getattr(self, name)
            if value is None:
                continue
            raw = value.encode("utf-8") if isinstance(value, str) else bytes(value)
            parts.append(_encode_bytes_field(number, raw))
        return b"".join(parts)

    def unsigned(self) -> "Message":
        """A copy of this message without signature and key."""
        return replace(self, signature=None, key=None)


def unmarshal_message(data: bytes) -> Message:
    """Decode a protobuf-encoded message; unknown fields are skipped."""
    values: dict[str, Any] = {}
    for number, wire_type, value in _iter_fields(data):
        name = _FIELD_BY_NUMBER.get(number)
        if name is None:
            continue
        if wire_type != _WIRE_BYTES:
            raise ValueError(f"field {name} has wrong wire type {wire_type}")
        values[name] = value.decode("utf-8") if name == "topic" else bytes(value)
    return Message(**values)


def default_msg_id_fn(msg: Message) -> bytes:
    """Default message ID: the author followed by the sequence number."""
    return (msg.from_peer or b"") + (msg.seqno or b"")