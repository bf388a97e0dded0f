"""Resource group tags attached to metered resource usage, in protobuf wire format."""

from __future__ import annotations

import enum
from dataclasses import dataclass

_VARINT = 0
_FIXED64 = 1
_LENGTH = 2
_FIXED32 = 5

_FIELD_SQL_DIGEST = 1
_FIELD_PLAN_DIGEST = 2
_FIELD_LABEL = 3

_UINT64_MASK = 0xFFFF_FFFF_FFFF_FFFF


class TagLabel(enum.IntEnum):
    """What kind of keys a tagged resource usage refers to."""

    UNKNOWN = 0
    ROW = 1
    INDEX = 2


@dataclass(frozen=True)
class ResourceGroupTag:
    """SQL digest, plan digest and optional label of a resource group."""

    sql_digest: bytes = b""
    plan_digest: bytes = b""
    label: TagLabel | None = None


class TagDecodeError(ValueError):
    """Raised when bytes are not a valid encoded resource group tag."""


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise TagDecodeError("unexpected end of data")
        if shift >= 64:
            raise TagDecodeError("integer overflow")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if byte < 0x80:
            return result & _UINT64_MASK, pos
        shift += 7


def _write_varint(value: int) -> bytes:
    value &= _UINT64_MASK
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _to_label(value: int) -> TagLabel:
    try:
        return TagLabel(value)
    except ValueError:
        return TagLabel.UNKNOWN


def decode_tag(data: bytes) -> ResourceGroupTag:
    """Decode a resource group tag; unknown fields are skipped."""
    data = bytes(data)
    sql_digest = b""
    plan_digest = b""
    label: TagLabel | None = None
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        field, wire_type = key >> 3, key & 0x7
        if field == 0:
            raise TagDecodeError("illegal field number 0")
        if wire_type == _VARINT:
            value, pos = _read_varint(data, pos)
            if field == _FIELD_LABEL:
                label = _to_label(value)
        elif wire_type == _LENGTH:
            length, pos = _read_varint(data, pos)
            end = pos + length
            if end > len(data):
                raise TagDecodeError("unexpected end of data")
            chunk = data[pos:end]
            pos = end
            if field == _FIELD_SQL_DIGEST:
                sql_digest = chunk
            elif field == _FIELD_PLAN_DIGEST:
                plan_digest = chunk
        elif wire_type in (_FIXED64, _FIXED32):
            pos += 8 if wire_type == _FIXED64 else 4
            if pos > len(data):
                raise TagDecodeError("unexpected end of data")
        else:
            raise TagDecodeError(f"illegal wire type {wire_type} for field {field}")
    return ResourceGroupTag(sql_digest=sql_digest, plan_digest=plan_digest, label=label)


def _length_field(field: int, payload: bytes) -> bytes:
    return _write_varint(field << 3 | _LENGTH) + _write_varint(len(payload)) + payload


def encode_tag(tag: ResourceGroupTag) -> bytes:
    """Encode a resource group tag in protobuf wire format."""
    out = bytearray()
    if tag.sql_digest:
        out += _length_field(_FIELD_SQL_DIGEST, tag.sql_digest)
    if tag.plan_digest:
        out += _length_field(_FIELD_PLAN_DIGEST, tag.plan_digest)
    if tag.label is not None:
        out += _write_varint(_FIELD_LABEL << 3 | _VARINT) + _write_varint(int(tag.label))
    return bytes(out)