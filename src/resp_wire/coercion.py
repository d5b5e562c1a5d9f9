"""
Result Coercion

Maps wire values onto the result type a caller asked for. Requested types are
first resolved to one of a closed set of target kinds; each kind has a fixed
conversion rule, and opaque object types go through the Encoder.

Rules, in priority order:
1. Text replies (`+` and `:`): "OK" is True for bool targets, otherwise the
   target's own text conversion.
2. Bulk strings: decoded by the Encoder into the target type.
3. Arrays: raw targets get the items untouched; an empty array is "no value";
   otherwise each element is decoded (blobs) or copied (compatible values),
   incompatible elements are left as None.
"""

import collections.abc
import typing
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple

from .encoder import Encoder
from .exceptions import ConversionError
from .protocol import Array, BulkString, Integer, SimpleString, TextValue, WireValue

WIRE_TYPES = (SimpleString, Integer, BulkString, Array)


class TargetKind(Enum):
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"
    BYTES = "bytes"
    SEQUENCE = "sequence"          # list[T]: elements decoded to T
    RAW_ARRAY = "raw_array"        # list: wire values as received
    RAW_BLOB_ARRAY = "raw_blobs"   # list[BulkString]: cast, no decoding
    WIRE = "wire"                  # a wire value class, returned when it matches
    OBJECT = "object"              # anything else, via the Encoder


@dataclass(frozen=True)
class Target:
    kind: TargetKind
    type: Any
    element: Optional["Target"] = None


_SCALARS = {
    bool: TargetKind.BOOLEAN,
    int: TargetKind.INTEGER,
    float: TargetKind.FLOAT,
    str: TargetKind.TEXT,
    bytes: TargetKind.BYTES,
}

_SEQUENCE_ORIGINS = (list, tuple, collections.abc.Sequence)


def resolve_target(target: Any) -> Target:
    """Classify a requested result type into a Target"""
    if isinstance(target, Target):
        return target
    if target in _SCALARS:
        return Target(_SCALARS[target], target)
    if target in (list, tuple):
        return Target(TargetKind.RAW_ARRAY, target)
    if target in WIRE_TYPES:
        return Target(TargetKind.WIRE, target)

    origin = typing.get_origin(target)
    if origin in _SEQUENCE_ORIGINS:
        args = [a for a in typing.get_args(target) if a is not Ellipsis]
        element = args[0] if args else Any
        if element is BulkString:
            return Target(TargetKind.RAW_BLOB_ARRAY, target)
        return Target(TargetKind.SEQUENCE, target, resolve_target(element))

    return Target(TargetKind.OBJECT, target)


def _coerce_text(text: str, target: Target) -> Any:
    kind = target.kind
    try:
        if kind is TargetKind.BOOLEAN:
            if text == "OK":
                return True
            lowered = text.strip().lower()
            if lowered in ("1", "true"):
                return True
            if lowered in ("0", "false"):
                return False
            raise ValueError("not a boolean")
        if kind is TargetKind.INTEGER:
            return int(text)
        if kind is TargetKind.FLOAT:
            return float(text)
        if kind is TargetKind.TEXT:
            return text
        if kind is TargetKind.BYTES:
            return text.encode('utf-8')
        if kind is TargetKind.OBJECT:
            if target.type in (Any, object):
                return text
            return target.type(text)
    except (TypeError, ValueError) as e:
        raise ConversionError(text, target.type, str(e)) from e
    raise ConversionError(text, target.type, "text reply cannot become a sequence")


def _decode_blob(data: bytes, target: Target, encoder: Encoder) -> Any:
    try:
        return encoder.decode(data, target.type)
    except (TypeError, ValueError) as e:
        raise ConversionError(data, target.type, str(e)) from e


def _coerce_element(value: WireValue, element: Target, encoder: Encoder) -> Any:
    """Decode one array element; None when it is neither a blob nor compatible"""
    if element.kind is TargetKind.WIRE:
        return value if isinstance(value, element.type) else None
    if isinstance(value, BulkString):
        if value.data is None:
            return None
        return _decode_blob(value.data, element, encoder)
    if isinstance(value, TextValue):
        if element.kind is TargetKind.TEXT or element.type in (Any, object):
            return value.text
        return None
    if element.kind is TargetKind.SEQUENCE:
        return try_coerce(value, element, encoder)[1]
    if element.kind is TargetKind.RAW_ARRAY or element.type in (Any, object):
        return list(value)
    return None


def try_coerce(value: Optional[WireValue], target: Any, encoder: Encoder) -> Tuple[bool, Any]:
    """
    Convert a wire value to the requested type.

    Args:
        value: Parsed reply (None when no reply was read)
        target: Requested Python type, e.g. int, str, list[str], MyDataclass
        encoder: Decoder for bulk string payloads

    Returns:
        (True, converted) on success, (False, None) for "no value": null
        replies and empty arrays

    Raises:
        ConversionError: The reply cannot represent the requested type
    """
    if value is None:
        return False, None
    target = resolve_target(target)

    if target.kind is TargetKind.WIRE and isinstance(value, target.type):
        return True, value
    if target.kind is TargetKind.WIRE:
        raise ConversionError(value, target.type, "reply is a different wire type")

    if isinstance(value, TextValue):
        return True, _coerce_text(value.text, target)

    if isinstance(value, BulkString):
        if value.data is None:
            return False, None
        return True, _decode_blob(value.data, target, encoder)

    if target.kind is TargetKind.RAW_ARRAY:
        return True, target.type(value)
    if target.kind is TargetKind.RAW_BLOB_ARRAY:
        blobs: List[BulkString] = []
        for item in value:
            if not isinstance(item, BulkString):
                raise ConversionError(item, BulkString, "array element is not a bulk string")
            blobs.append(item)
        return True, blobs

    # Empty array is no value, like a null reply
    if len(value) == 0:
        return False, None

    if target.kind is TargetKind.SEQUENCE:
        element = target.element
    elif target.kind is TargetKind.OBJECT and target.type in (Any, object):
        element = target
    else:
        raise ConversionError(value, target.type, "array reply cannot become a scalar")

    items = [_coerce_element(item, element, encoder) for item in value]
    if typing.get_origin(target.type) is tuple:
        return True, tuple(items)
    return True, items


def coerce(value: Optional[WireValue], target: Any, encoder: Encoder, default: Any = None) -> Any:
    """try_coerce() that returns `default` for no value"""
    found, result = try_coerce(value, target, encoder)
    return result if found else default
