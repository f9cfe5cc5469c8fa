"""
Value codec: application values <-> storable bytes.

Every encoded value starts with a one-byte type tag, so decoding never needs
an external type hint:

    N  None            T/F  bool            I  int (decimal text)
    D  float (hex)     S    str (UTF-8)     B  raw bytes
    W  datetime (ISO)  J    dict/list (orjson document)

Structured values go through orjson. JSON has no binary or datetime type, so
nested bytes and datetimes are wrapped in single-key marker objects
({"$bytes": <base64>} and {"$datetime": <iso>}). A user dict that happens to
look like a marker is wrapped once more in {"$dict": ...}.
"""

from __future__ import annotations

import base64
import binascii
import math
from datetime import datetime
from typing import Any

import orjson

from sqlkv.exceptions import DecodeError, ValidationError

TAG_NULL = b"N"
TAG_TRUE = b"T"
TAG_FALSE = b"F"
TAG_INT = b"I"
TAG_FLOAT = b"D"
TAG_STR = b"S"
TAG_BYTES = b"B"
TAG_DATETIME = b"W"
TAG_JSON = b"J"

_BYTES_MARKER = "$bytes"
_DATETIME_MARKER = "$datetime"
_DICT_MARKER = "$dict"
_MARKERS = frozenset({_BYTES_MARKER, _DATETIME_MARKER, _DICT_MARKER})

# orjson serializes integers in [-2**63, 2**64)
_JSON_INT_MIN = -(2**63)
_JSON_INT_MAX = 2**64 - 1


def encode(value: Any) -> bytes:
    """Encode a value into its tagged byte representation.

    Args:
        value: None, bool, int, float, str, bytes-like, datetime,
            or a dict/list/tuple built from those.

    Returns:
        Self-describing byte string.

    Raises:
        ValidationError: If the value (or a nested member) is not encodable.
    """
    if value is None:
        return TAG_NULL
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return TAG_TRUE if value else TAG_FALSE
    if isinstance(value, int):
        try:
            digits = str(value)
        except ValueError as e:
            # interpreter's int/str conversion digit limit
            raise ValidationError(
                "Integer too large to encode",
                context={"field": "value", "reason": str(e)},
            ) from e
        return TAG_INT + digits.encode("ascii")
    if isinstance(value, float):
        return TAG_FLOAT + value.hex().encode("ascii")
    if isinstance(value, str):
        try:
            return TAG_STR + value.encode("utf-8", errors="strict")
        except UnicodeEncodeError as e:
            raise ValidationError(
                "String is not valid UTF-8",
                context={"field": "value", "reason": str(e)},
            ) from e
    if isinstance(value, (bytes, bytearray, memoryview)):
        return TAG_BYTES + bytes(value)
    if isinstance(value, datetime):
        return TAG_DATETIME + value.isoformat().encode("ascii")
    if isinstance(value, (dict, list, tuple)):
        try:
            packed = _pack(value, "$", set())
        except RecursionError as e:
            raise ValidationError(
                "Structured value is nested too deeply",
                context={"field": "value"},
            ) from e
        try:
            return TAG_JSON + orjson.dumps(packed)
        except orjson.JSONEncodeError as e:
            raise ValidationError(
                "Structured value cannot be serialized",
                context={"field": "value", "reason": str(e)},
            ) from e
    raise ValidationError(
        "Unsupported value type",
        context={"field": "value", "type": type(value).__name__},
    )


def decode(data: bytes | bytearray | memoryview) -> Any:
    """Decode bytes produced by encode() back into the original value.

    Raises:
        DecodeError: If the bytes are empty, carry an unknown tag, or the
            payload does not match its tag.
    """
    raw = bytes(data)
    if not raw:
        raise DecodeError("Cannot decode an empty payload", context={"size": 0})

    tag, payload = raw[:1], raw[1:]

    if tag == TAG_BYTES:
        return payload
    if tag in (TAG_NULL, TAG_TRUE, TAG_FALSE):
        if payload:
            raise DecodeError(
                "Unexpected payload after constant tag",
                context={"tag": tag.decode(), "size": len(raw)},
            )
        return None if tag == TAG_NULL else tag == TAG_TRUE

    try:
        if tag == TAG_STR:
            return payload.decode("utf-8")
        if tag == TAG_INT:
            text = payload.decode("ascii")
            if not text.lstrip("-").isdigit():
                raise ValueError(f"not an integer literal: {text!r}")
            return int(text)
        if tag == TAG_FLOAT:
            return float.fromhex(payload.decode("ascii"))
        if tag == TAG_DATETIME:
            return datetime.fromisoformat(payload.decode("ascii"))
        if tag == TAG_JSON:
            doc = orjson.loads(payload)
            if not isinstance(doc, (dict, list)):
                raise ValueError("structured payload is not an object or array")
            return _unpack(doc)
    except (UnicodeDecodeError, ValueError, binascii.Error) as e:
        # orjson.JSONDecodeError is a ValueError subclass
        raise DecodeError(
            "Corrupted payload",
            context={"tag": tag.decode("latin-1"), "size": len(raw), "reason": str(e)},
        ) from e

    raise DecodeError(
        "Unknown type tag",
        context={"tag": tag.decode("latin-1"), "size": len(raw)},
    )


def _pack(obj: Any, path: str, active: set[int]) -> Any:
    """Rewrite a structured value into plain JSON types plus markers.

    ``active`` holds the ids of the containers on the current path; meeting
    one again means the value refers to itself.
    """
    if obj is None or isinstance(obj, (bool, str)):
        return obj
    if isinstance(obj, int):
        if not _JSON_INT_MIN <= obj <= _JSON_INT_MAX:
            raise ValidationError(
                "Integer inside a structured value is out of 64-bit range",
                context={"field": "value", "path": path},
            )
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValidationError(
                "Non-finite float inside a structured value",
                context={"field": "value", "path": path},
            )
        return obj
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return {_BYTES_MARKER: base64.b64encode(bytes(obj)).decode("ascii")}
    if isinstance(obj, datetime):
        return {_DATETIME_MARKER: obj.isoformat()}
    if isinstance(obj, (list, tuple, dict)):
        if id(obj) in active:
            raise ValidationError(
                "Structured value contains a reference to itself",
                context={"field": "value", "path": path},
            )
        active.add(id(obj))
        try:
            return _pack_container(obj, path, active)
        finally:
            active.discard(id(obj))
    raise ValidationError(
        "Unsupported type inside a structured value",
        context={"field": "value", "path": path, "type": type(obj).__name__},
    )


def _pack_container(obj: list | tuple | dict, path: str, active: set[int]) -> Any:
    if isinstance(obj, (list, tuple)):
        return [_pack(item, f"{path}[{i}]", active) for i, item in enumerate(obj)]
    packed: dict[str, Any] = {}
    for key, item in obj.items():
        if not isinstance(key, str):
            raise ValidationError(
                "Dict keys must be strings",
                context={"field": "value", "path": path, "key_type": type(key).__name__},
            )
        packed[key] = _pack(item, f"{path}.{key}", active)
    if len(packed) == 1 and next(iter(packed)) in _MARKERS:
        return {_DICT_MARKER: packed}
    return packed


def _unpack(obj: Any) -> Any:
    """Inverse of _pack."""
    if isinstance(obj, list):
        return [_unpack(item) for item in obj]
    if not isinstance(obj, dict):
        return obj

    if len(obj) == 1:
        marker, inner = next(iter(obj.items()))
        if marker == _BYTES_MARKER:
            if not isinstance(inner, str):
                raise ValueError("bytes marker must hold a base64 string")
            return base64.b64decode(inner, validate=True)
        if marker == _DATETIME_MARKER:
            if not isinstance(inner, str):
                raise ValueError("datetime marker must hold an ISO string")
            return datetime.fromisoformat(inner)
        if marker == _DICT_MARKER:
            if not isinstance(inner, dict):
                raise ValueError("dict marker must hold an object")
            return {key: _unpack(item) for key, item in inner.items()}

    return {key: _unpack(item) for key, item in obj.items()}
