"""
Unit Tests: Default Value Encoder
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import pytest

from resp_wire.encoder import DefaultEncoder


@dataclass
class Point:
    x: int
    y: int


@pytest.mark.unit
class TestEncode:
    """Argument values to payload bytes"""

    def setup_method(self):
        self.encoder = DefaultEncoder()

    @pytest.mark.parametrize("value,expected", [
        (None, b''),
        (b'\x00raw', b'\x00raw'),
        (bytearray(b'ba'), b'ba'),
        (memoryview(b'mv'), b'mv'),
        ("héllo", 'héllo'.encode('utf-8')),
        (True, b'1'),
        (False, b'0'),
        (42, b'42'),
        (-1.5, b'-1.5'),
        (Decimal("1.10"), b'1.10'),
        (date(2024, 1, 2), b'2024-01-02'),
        (datetime(2024, 1, 2, 3, 4, 5), b'2024-01-02T03:04:05'),
    ])
    def test_primitives(self, value, expected):
        assert self.encoder.encode(value) == expected

    def test_dataclass_as_compact_json(self):
        assert self.encoder.encode(Point(1, 2)) == b'{"x":1,"y":2}'

    def test_containers_as_compact_json(self):
        assert self.encoder.encode({"a": [1, 2]}) == b'{"a":[1,2]}'


@pytest.mark.unit
class TestDecode:
    """Payload bytes to the requested type"""

    def setup_method(self):
        self.encoder = DefaultEncoder()

    def test_bytes_targets(self):
        assert self.encoder.decode(b'\xff', bytes) == b'\xff'
        assert self.encoder.decode(b'ab', bytearray) == bytearray(b'ab')

    def test_any_returns_raw_bytes(self):
        assert self.encoder.decode(b'plain text', Any) == b'plain text'
        assert self.encoder.decode(b'plain text', object) == b'plain text'

    @pytest.mark.parametrize("data,expected", [
        (b'1', True), (b'true', True), (b'OK', True), (b'yes', True),
        (b'0', False), (b'false', False), (b'no', False), (b'', False),
    ])
    def test_booleans(self, data, expected):
        assert self.encoder.decode(data, bool) is expected

    def test_invalid_boolean(self):
        with pytest.raises(ValueError):
            self.encoder.decode(b'maybe', bool)

    def test_numbers_and_dates(self):
        assert self.encoder.decode(b'7', int) == 7
        assert self.encoder.decode(b'0.5', float) == 0.5
        assert self.encoder.decode(b'1.10', Decimal) == Decimal("1.10")
        assert self.encoder.decode(b'2024-01-02', date) == date(2024, 1, 2)
        assert self.encoder.decode(b'2024-01-02T03:04:05', datetime) == datetime(2024, 1, 2, 3, 4, 5)

    def test_json_targets(self):
        assert self.encoder.decode(b'{"x":1,"y":2}', Point) == Point(1, 2)
        assert self.encoder.decode(b'[1,2]', list) == [1, 2]
        assert self.encoder.decode(b'', dict) is None

    def test_invalid_utf8_is_a_value_error(self):
        with pytest.raises(ValueError):
            self.encoder.decode(b'\xff', str)
