"""
Value Encoder

Turns command arguments into binary payloads and binary replies back into
Python values. The client only depends on the Encoder protocol; DefaultEncoder
is a text/JSON implementation compatible with what other clients store.
"""

import dataclasses
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

TRUE_TEXT = ('1', 'true', 'ok', 'yes')
FALSE_TEXT = ('0', 'false', 'no', '')


@runtime_checkable
class Encoder(Protocol):
    def encode(self, value: Any) -> bytes:
        ...

    def decode(self, data: bytes, target: Any) -> Any:
        ...


class DefaultEncoder:
    """
    Primitive values travel as text, everything else as compact JSON.

    Decoding is driven by the requested target type: Any or object returns
    the raw bytes, unknown targets are parsed as JSON.
    """

    def encode(self, value: Any) -> bytes:
        if value is None:
            return b''
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value)
        if isinstance(value, str):
            return value.encode('utf-8')
        if isinstance(value, bool):
            return b'1' if value else b'0'
        if isinstance(value, (int, float, Decimal)):
            return str(value).encode('ascii')
        if isinstance(value, (datetime, date)):
            return value.isoformat().encode('ascii')
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            value = dataclasses.asdict(value)
        return json.dumps(value, separators=(',', ':'), default=str).encode('utf-8')

    def decode(self, data: bytes, target: Any) -> Any:
        if target in (bytes, bytearray):
            return target(data)
        if target is Any or target is object:
            return data
        text = data.decode('utf-8')
        if target is str:
            return text
        if target is bool:
            lowered = text.strip().lower()
            if lowered in TRUE_TEXT:
                return True
            if lowered in FALSE_TEXT:
                return False
            raise ValueError(f"Not a boolean: {text!r}")
        if target is int:
            return int(text)
        if target is float:
            return float(text)
        if target is Decimal:
            return Decimal(text)
        if target is datetime:
            return datetime.fromisoformat(text)
        if target is date:
            return date.fromisoformat(text)

        decoded = json.loads(text) if text else None
        if isinstance(target, type) and dataclasses.is_dataclass(target) and isinstance(decoded, dict):
            return target(**decoded)
        return decoded
