"""
RESP Wire Codec

Request framing and incremental reply parsing for the Redis serialization
protocol (RESP2). This module performs no I/O: connections feed received bytes
into a RespParser and pull complete replies out of it, so the same grammar
serves both the blocking and the asyncio transports.

Request:  *<argc+1>\r\n $<len>\r\n<name>\r\n ($<len>\r\n<arg>\r\n)*
Replies:
- `+text\r\n`      simple string
- `-text\r\n`      error (raised as ServerError, never returned)
- `:text\r\n`      integer (kept as its decimal text)
- `$len\r\n...\r\n` bulk string, `$-1\r\n` is null
- `*len\r\n...`    array of replies (recursive), `*-1\r\n` is null
"""

import re
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import structlog

from .exceptions import ProtocolViolation, ServerError, SizeLimitExceeded, hex_dump

logger = structlog.get_logger()

CRLF = b'\r\n'

# Reply prefixes
PREFIX_SIMPLE = ord('+')
PREFIX_ERROR = ord('-')
PREFIX_INTEGER = ord(':')
PREFIX_BULK = ord('$')
PREFIX_ARRAY = ord('*')

# Argument counts whose command header is memoized
CACHED_ARITIES = (0, 1, 2, 3)

# Longest preview of a binary argument or reply written to the command log
LOG_PREVIEW_BYTES = 1024


# ---------------------------------------------------------------------------
# Wire values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SimpleString:
    """`+text` status reply, e.g. OK or PONG"""
    text: str

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class Integer:
    """`:n` reply, kept as text until coerced"""
    text: str

    def __int__(self) -> int:
        return int(self.text)

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class BulkString:
    """Length-prefixed binary payload; data is None for the null bulk string"""
    data: Optional[bytes]

    @property
    def is_null(self) -> bool:
        return self.data is None


@dataclass(frozen=True)
class Array:
    """Ordered replies; items is None for the null array"""
    items: Optional[Tuple["WireValue", ...]]

    @property
    def is_null(self) -> bool:
        return self.items is None

    def __len__(self) -> int:
        return len(self.items) if self.items else 0

    def __iter__(self):
        return iter(self.items or ())


WireValue = Union[SimpleString, Integer, BulkString, Array]
TextValue = (SimpleString, Integer)

NULL_BULK = BulkString(None)
NULL_ARRAY = Array(None)


# ---------------------------------------------------------------------------
# Request encoding
# ---------------------------------------------------------------------------

class HeaderCache:
    """
    Process-wide memo of `*<argc+1>\\r\\n$<len>\\r\\n<name>\\r\\n` prefixes.

    Content addressed by (command, argc) and safe to share between every
    client in the process; never needs clearing.
    """

    def __init__(self):
        self._headers: Dict[Tuple[str, int], bytes] = {}
        self._lock = threading.Lock()

    def get(self, command: str, argc: int) -> bytes:
        if argc not in CACHED_ARITIES:
            return build_header(command, argc)

        key = (command, argc)
        header = self._headers.get(key)
        if header is None:
            with self._lock:
                header = self._headers.setdefault(key, build_header(command, argc))
        return header

    def __len__(self) -> int:
        return len(self._headers)

    def __contains__(self, key: Tuple[str, int]) -> bool:
        return key in self._headers


def build_header(command: str, argc: int) -> bytes:
    """Array header plus the bulk frame of the command name"""
    name = command.encode('utf-8')
    return b'*%d\r\n$%d\r\n%s\r\n' % (argc + 1, len(name), name)


HEADER_CACHE = HeaderCache()


def encode_request(command: str, args: Sequence[bytes], max_size: int = 0) -> bytes:
    """
    Frame one command as a RESP array of bulk strings.

    Args:
        command: Command name, sent verbatim
        args: Already-encoded argument payloads
        max_size: Reject requests longer than this many bytes (0 = unlimited)

    Returns:
        Request bytes ready for the socket

    Raises:
        SizeLimitExceeded: Assembled request is larger than max_size
    """
    parts = [HEADER_CACHE.get(command, len(args))]
    for arg in args:
        parts.append(b'$%d\r\n' % len(arg))
        parts.append(arg)
        parts.append(CRLF)
    request = b''.join(parts)

    if max_size > 0 and len(request) > max_size:
        raise SizeLimitExceeded(command, len(request), max_size)
    return request


def describe_request(command: str, args: Sequence[bytes], original: Optional[Sequence[Any]] = None) -> str:
    """Single line rendering of a request for the command log"""
    words = [command]
    for i, payload in enumerate(args):
        value = original[i] if original is not None and i < len(original) else payload
        if isinstance(value, datetime):
            words.append(value.strftime('%Y-%m-%d %H:%M:%S.') + f'{value.microsecond // 1000:03d}')
        elif isinstance(value, (str, int, float, bool)) or value is None:
            words.append(str(value))
        else:
            preview = payload[:LOG_PREVIEW_BYTES].decode('utf-8', 'replace').rstrip()
            words.append(f'[{len(payload)}]{preview}')
    return ' '.join(words)


def describe_reply(value: WireValue) -> str:
    """Compact rendering of a reply for the command log"""
    if isinstance(value, TextValue):
        return value.text
    if isinstance(value, BulkString):
        if value.data is None:
            return '(nil)'
        return value.data[:LOG_PREVIEW_BYTES].decode('utf-8', 'replace').rstrip()
    if value.items is None:
        return '(nil)'
    return '[' + ', '.join(describe_reply(v) for v in value.items) + ']'


# ---------------------------------------------------------------------------
# Reply decoding
# ---------------------------------------------------------------------------

class _Incomplete(Exception):
    """Buffer ends before the frame does"""


@dataclass(frozen=True)
class _ArrayHeader:
    count: int


@dataclass(frozen=True)
class _ErrorLine:
    message: str


NEED_MORE = object()

# Length of a bulk string or array: -1 (null) or a plain decimal count
_LENGTH = re.compile(rb'-1|[0-9]+')


class RespParser:
    """
    Incremental RESP reply parser.

    Received bytes are appended with feed(); gets() returns the next complete
    reply, or NEED_MORE when the buffer ends mid-reply. Parsing resumes where
    the previous call stopped: frames already read stay decoded (arrays under
    construction are kept on a stack), so a large reply arriving in many
    chunks is decoded in a single pass.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._pos = 0
        # (declared count, items so far) for every array still being filled
        self._stack: List[Tuple[int, List[WireValue]]] = []

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def pending(self) -> bytes:
        """Bytes received but not yet consumed by a complete reply"""
        return bytes(self._buffer)

    def clear(self) -> None:
        self._buffer.clear()
        self._pos = 0
        self._stack.clear()

    def _consume(self) -> int:
        consumed = self._pos
        del self._buffer[:consumed]
        self._pos = 0
        self._stack.clear()
        return consumed

    def gets(self) -> Any:
        """
        Pop one complete reply.

        Returns:
            WireValue, or NEED_MORE if the buffer holds an incomplete reply

        Raises:
            ServerError: The reply is an error reply (the whole reply that
                carried it is consumed first, nested or not)
            ProtocolViolation: Unknown prefix byte or malformed length
        """
        while True:
            try:
                value, end = self._parse_frame(self._pos)
            except _Incomplete:
                return NEED_MORE
            self._pos = end

            if isinstance(value, _ErrorLine):
                nested = bool(self._stack)
                raise ServerError(value.message, consumed=self._consume(), nested=nested)

            if isinstance(value, _ArrayHeader):
                self._stack.append((value.count, []))
                continue

            while self._stack:
                count, items = self._stack[-1]
                items.append(value)
                if len(items) < count:
                    break
                self._stack.pop()
                value = Array(tuple(items))

            if not self._stack:
                self._consume()
                return value

    def _read_line(self, pos: int) -> Tuple[bytes, int]:
        # Only the exact \r\n pair terminates; a lone \r stays in the text
        end = self._buffer.find(CRLF, pos)
        if end < 0:
            raise _Incomplete()
        return bytes(self._buffer[pos:end]), end + 2

    def _read_length(self, pos: int, prefix: int) -> Tuple[int, int]:
        line, pos = self._read_line(pos)
        if _LENGTH.fullmatch(line) is None:
            raise ProtocolViolation(bytes([prefix]), line + self._buffer[pos:])
        return int(line), pos

    def _parse_frame(self, pos: int) -> Tuple[Any, int]:
        """One frame at `pos`; arrays yield only their header"""
        if pos >= len(self._buffer):
            raise _Incomplete()
        prefix = self._buffer[pos]
        pos += 1

        if prefix == PREFIX_BULK:
            length, pos = self._read_length(pos, prefix)
            if length < 0:
                return NULL_BULK, pos
            end = pos + length
            # Payload plus trailing \r\n; an empty payload still has its terminator
            if len(self._buffer) < end + 2:
                raise _Incomplete()
            return BulkString(bytes(self._buffer[pos:end])), end + 2

        if prefix == PREFIX_ARRAY:
            count, pos = self._read_length(pos, prefix)
            if count < 0:
                return NULL_ARRAY, pos
            if count == 0:
                return Array(()), pos
            return _ArrayHeader(count), pos

        if prefix == PREFIX_SIMPLE:
            line, pos = self._read_line(pos)
            return SimpleString(line.decode('utf-8', 'replace')), pos

        if prefix == PREFIX_INTEGER:
            line, pos = self._read_line(pos)
            return Integer(line.decode('ascii', 'replace')), pos

        if prefix == PREFIX_ERROR:
            line, pos = self._read_line(pos)
            return _ErrorLine(line.decode('utf-8', 'replace')), pos

        pending = bytes(self._buffer[pos:])
        logger.error("Unrecognized reply prefix",
                     prefix=f"{prefix:02X}",
                     pending=hex_dump(pending))
        raise ProtocolViolation(bytes([prefix]), pending)


def encode_reply(value: Union[WireValue, ServerError]) -> bytes:
    """
    Serialize a reply value (server direction).

    Used by test doubles and tooling that need to speak the server side of the
    protocol; the client itself only parses replies.
    """
    if isinstance(value, ServerError):
        return b'-' + value.message.encode('utf-8') + CRLF
    if isinstance(value, SimpleString):
        return b'+' + value.text.encode('utf-8') + CRLF
    if isinstance(value, Integer):
        return b':' + value.text.encode('ascii') + CRLF
    if isinstance(value, BulkString):
        if value.data is None:
            return b'$-1\r\n'
        return b'$%d\r\n%s\r\n' % (len(value.data), value.data)
    if value.items is None:
        return b'*-1\r\n'
    return b'*%d\r\n' % len(value.items) + b''.join(encode_reply(v) for v in value.items)
