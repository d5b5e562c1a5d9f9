"""
Pytest configuration for resp_wire tests

In-memory transports that stand in for a server:
- FakeSocket: serves canned reply bytes in configurable chunks and records
  everything the client sends
- socket_factory: hands out prepared FakeSockets and counts connects
- FakeWriter: asyncio StreamWriter double paired with a fed StreamReader
"""

import asyncio
import socket
from typing import List, Optional, Tuple

import pytest

from resp_wire.protocol import NEED_MORE, Array, RespParser


class FakeSocket:
    """
    Socket double with canned replies.

    When the canned bytes run out a blocking recv() times out, unless
    `eof=True`, in which case it reports the server closing the stream.
    """

    def __init__(self, replies: bytes = b'', chunk_size: Optional[int] = None, eof: bool = False):
        self.incoming = bytearray(replies)
        self.chunk_size = chunk_size
        self.eof = eof
        self.sent = bytearray()
        self.writes = 0
        self.closed = False
        self.dead = False
        self.blocking = True
        self.timeout = None
        self.fail_send = False

    def add_replies(self, data: bytes) -> None:
        self.incoming.extend(data)

    def recv(self, size: int) -> bytes:
        if self.closed:
            raise OSError("socket closed")
        if not self.incoming:
            if not self.blocking:
                raise BlockingIOError()
            if self.eof:
                return b''
            raise socket.timeout("timed out")
        size = min(size, self.chunk_size or size)
        data = bytes(self.incoming[:size])
        del self.incoming[:size]
        return data

    def sendall(self, data: bytes) -> None:
        if self.fail_send:
            raise BrokenPipeError("broken pipe")
        self.writes += 1
        self.sent.extend(data)

    def fileno(self) -> int:
        return -1 if self.closed else 7

    def getpeername(self):
        if self.closed or self.dead:
            raise OSError("not connected")
        return ("127.0.0.1", 6379)

    def setblocking(self, flag: bool) -> None:
        self.blocking = flag

    def settimeout(self, timeout) -> None:
        self.timeout = timeout
        self.blocking = timeout is None or timeout > 0

    def close(self) -> None:
        self.closed = True

    def requests(self) -> List[List[bytes]]:
        return parse_requests(bytes(self.sent))


def parse_requests(data: bytes) -> List[List[bytes]]:
    """Decode sent request bytes into [command, arg, ...] lists"""
    parser = RespParser()
    parser.feed(data)
    requests = []
    while True:
        value = parser.gets()
        if value is NEED_MORE:
            break
        assert isinstance(value, Array)
        requests.append([item.data for item in value])
    assert parser.pending() == b''
    return requests


class SocketFactory:
    """Hands out prepared sockets in order; records every connect"""

    def __init__(self):
        self.sockets: List[FakeSocket] = []
        self.connects = []

    def add(self, replies: bytes = b'', **kwargs) -> FakeSocket:
        sock = FakeSocket(replies, **kwargs)
        self.sockets.append(sock)
        return sock

    def __call__(self, endpoint, timeout):
        self.connects.append((endpoint, timeout))
        if not self.sockets:
            raise ConnectionRefusedError("no server")
        return self.sockets.pop(0)


@pytest.fixture
def socket_factory():
    return SocketFactory()


class FakeWriter:
    """StreamWriter double recording written bytes"""

    def __init__(self, reader: Optional[asyncio.StreamReader] = None):
        self.reader = reader
        self.written = bytearray()
        self.closing = False
        self.fail_write = False

    def write(self, data: bytes) -> None:
        if self.fail_write:
            raise ConnectionResetError("reset by peer")
        self.written.extend(data)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closing

    def close(self) -> None:
        self.closing = True

    async def wait_closed(self) -> None:
        return None

    def get_extra_info(self, name, default=None):
        return default

    def requests(self) -> List[List[bytes]]:
        return parse_requests(bytes(self.written))


class StreamFactory:
    """Async counterpart of SocketFactory; each connect gets a fed reader"""

    def __init__(self):
        self.replies: List[Tuple[bytes, bool]] = []
        self.writers: List[FakeWriter] = []
        self.connects = []

    def add(self, replies: bytes = b'', eof: bool = False) -> None:
        self.replies.append((replies, eof))

    async def __call__(self, endpoint, ssl_context):
        self.connects.append((endpoint, ssl_context))
        if not self.replies:
            raise ConnectionRefusedError("no server")
        replies, eof = self.replies.pop(0)
        reader = asyncio.StreamReader()
        reader.feed_data(replies)
        if eof:
            reader.feed_eof()
        writer = FakeWriter(reader)
        self.writers.append(writer)
        return reader, writer


@pytest.fixture
def stream_factory():
    return StreamFactory()


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "contract: Contract tests for pluggable interfaces"
    )
